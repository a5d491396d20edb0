import io

from card_pipeline.models import VerifyDecision
from card_pipeline.ui import ConsolePrompt, Spinner


def test_console_prompt_answers() -> None:
    answers = iter(["maybe", "n", "", "r", "x", "p"])
    stream = io.StringIO()
    prompt = ConsolePrompt(ask=lambda message: next(answers), stream=stream)

    assert prompt.confirm_continue("investigate", "planning") is False
    assert prompt.verify_decision(1) is VerifyDecision.ACCEPT
    assert prompt.verify_decision(2) is VerifyDecision.REEXECUTE
    assert prompt.verify_decision(3) is VerifyDecision.PAUSE
    assert "INVESTIGATE phase complete" in stream.getvalue()


def test_console_prompt_end_of_input_declines() -> None:
    def closed(message: str) -> str:
        raise EOFError

    prompt = ConsolePrompt(ask=closed, stream=io.StringIO())
    assert prompt.confirm_continue("record", "completion") is False
    assert prompt.verify_decision(1) is VerifyDecision.PAUSE


def test_spinner_thread_is_joined_on_exit() -> None:
    stream = io.StringIO()
    with Spinner("Running PLAN phase...", stream=stream) as spinner:
        assert spinner._thread.is_alive()
    assert not spinner._thread.is_alive()
    spinner.stop()
    assert stream.getvalue() == ""

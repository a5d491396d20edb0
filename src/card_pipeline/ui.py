from __future__ import annotations

import sys
import threading
from typing import Callable, Protocol, TextIO

from .models import VerifyDecision

_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"
_FRAME_SECONDS = 0.08


class Spinner:
    """Animated progress line on stderr, driven by a background thread.

    The thread shares nothing with the caller except the stop event;
    ``stop`` joins it before returning so no frame is drawn afterwards.
    """

    def __init__(self, message: str, *, stream: TextIO | None = None) -> None:
        self.message = message
        self._stream = stream if stream is not None else sys.stderr
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="card-spinner", daemon=True)

    def start(self) -> "Spinner":
        self._thread.start()
        return self

    def stop(self) -> None:
        """Stop and join the spinner thread. Safe to call more than once."""
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join()

    def __enter__(self) -> "Spinner":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _run(self) -> None:
        interactive = self._stream.isatty()
        index = 0
        while True:
            if interactive:
                self._stream.write(f"\r{_FRAMES[index % len(_FRAMES)]} {self.message}")
                self._stream.flush()
            index += 1
            if self._stop.wait(_FRAME_SECONDS):
                break
        if interactive:
            self._stream.write("\r\033[K")
            self._stream.flush()


class OperatorPrompt(Protocol):
    """Operator decisions requested by the orchestrator."""

    def confirm_continue(self, completed_phase: str, next_phase: str) -> bool: ...

    def verify_decision(self, attempt: int) -> VerifyDecision: ...

    def notify(self, message: str) -> None: ...


class ConsolePrompt:
    """Line-based prompts on stdin/stderr."""

    def __init__(self, *, ask: Callable[[str], str] = input, stream: TextIO | None = None) -> None:
        self._ask = ask
        self._stream = stream if stream is not None else sys.stderr

    def notify(self, message: str) -> None:
        print(message, file=self._stream)

    def confirm_continue(self, completed_phase: str, next_phase: str) -> bool:
        self.notify(f"\n-- {completed_phase.upper()} phase complete")
        while True:
            answer = self._read(f"Proceed to {next_phase}? [Y/n] ", on_eof="n").lower()
            if answer in ("", "y", "yes"):
                return True
            if answer in ("n", "no"):
                return False

    def verify_decision(self, attempt: int) -> VerifyDecision:
        self.notify(f"\n-- Verification of attempt {attempt} complete")
        choices = {
            "a": VerifyDecision.ACCEPT,
            "accept": VerifyDecision.ACCEPT,
            "r": VerifyDecision.REEXECUTE,
            "reexecute": VerifyDecision.REEXECUTE,
            "p": VerifyDecision.PAUSE,
            "pause": VerifyDecision.PAUSE,
        }
        while True:
            answer = self._read("[a]ccept, [r]e-execute or [p]ause? ", on_eof="p").lower()
            if answer == "":
                return VerifyDecision.ACCEPT
            if answer in choices:
                return choices[answer]

    def _read(self, prompt: str, *, on_eof: str) -> str:
        try:
            return self._ask(prompt).strip()
        except EOFError:
            return on_eof

from __future__ import annotations

import logging
import sys
import uuid
from typing import Any, Callable

from deepagents import create_deep_agent
from langgraph.checkpoint.memory import InMemorySaver

from .backends import build_phase_backend
from .errors import AgentInvocationError
from .llm import extract_agent_text, get_chat_model
from .models import AgentOutcome, AgentRequest, InvokeMode
from .runtime import clear_phase_complete, read_phase_complete
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

_END_CONVERSATION = {"", "done", "/done", "exit"}


class DeepAgentRuntime:
    """In-process phase agent built with ``deepagents.create_deep_agent``.

    The agent works through a filesystem backend whose write scope follows the
    phase allowlist. Interactive phases keep a conversation going with the
    operator on one checkpointed thread, so each follow-up sees the earlier
    turns, until the operator sends an empty line or ``done``. Non-interactive
    phases get a single turn.
    """

    name = "deepagents"

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        ask: Callable[[str], str] = input,
        model_factory: Callable[..., Any] = get_chat_model,
    ) -> None:
        self.settings = settings
        self._ask = ask
        self._model_factory = model_factory

    def invoke(self, request: AgentRequest) -> AgentOutcome:
        request.output_dir.mkdir(parents=True, exist_ok=True)
        clear_phase_complete(request.output_dir)
        model = self._model_factory(model_name=self.settings.model, repo_root=request.working_dir)
        agent = create_deep_agent(
            model=model,
            tools=[],
            backend=build_phase_backend(request.working_dir, request.output_dir, request.allowed_tools),
            system_prompt=request.system_prompt,
            name=f"card-{request.phase.value}",
            checkpointer=InMemorySaver(),
        )
        config = {
            "configurable": {"thread_id": f"{request.session_id}-{request.phase.value}-{uuid.uuid4().hex[:8]}"},
            "recursion_limit": self.settings.recursion_limit,
        }
        message = request.initial_message
        try:
            while True:
                response = agent.invoke({"messages": [{"role": "user", "content": message}]}, config=config)
                reply = extract_agent_text(response).strip()
                sig = read_phase_complete(request.output_dir)
                if sig is not None and sig.status == "complete":
                    return AgentOutcome.PHASE_COMPLETE
                if request.mode is InvokeMode.NON_INTERACTIVE:
                    return AgentOutcome.SUCCESS
                print(reply, file=sys.stderr)
                try:
                    message = self._ask("> ").strip()
                except EOFError:
                    return AgentOutcome.SUCCESS
                if message.lower() in _END_CONVERSATION:
                    return AgentOutcome.SUCCESS
        except KeyboardInterrupt:
            # Only raised when no InterruptSignal has taken over SIGINT.
            return AgentOutcome.INTERRUPTED
        except Exception as exc:  # noqa: BLE001 - surface any agent failure as a generic invocation error.
            raise AgentInvocationError(f"deep agent failed during {request.phase.value}: {exc}") from exc

from __future__ import annotations

import logging
import signal
import threading
from types import FrameType
from typing import Any

logger = logging.getLogger(__name__)


class InterruptSignal:
    """Operator cancel request, observed only at orchestrator checkpoints.

    ``install`` routes SIGINT into the event for the duration of a ``with``
    block (main thread only); elsewhere ``trigger`` can be called directly.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._previous_handler: Any = None
        self._installed = False

    def trigger(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def clear(self) -> None:
        self._event.clear()

    def _handle(self, signum: int, frame: FrameType | None) -> None:
        logger.info("Interrupt received; pausing at the next checkpoint")
        self.trigger()

    def install(self) -> "InterruptSignal":
        if threading.current_thread() is threading.main_thread():
            self._previous_handler = signal.signal(signal.SIGINT, self._handle)
            self._installed = True
        return self

    def uninstall(self) -> None:
        if self._installed:
            signal.signal(signal.SIGINT, self._previous_handler)
            self._installed = False

    def __enter__(self) -> "InterruptSignal":
        return self.install()

    def __exit__(self, *exc_info: object) -> None:
        self.uninstall()

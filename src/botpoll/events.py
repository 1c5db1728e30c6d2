from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .errors import FatalError
from .logging import get_logger

logger = get_logger(__name__)

POLLING_STARTED = "Polling started"
POLLING_STOPPED = "Polling stopped"
POLLING_RESTART = "Polling restart initiated"

LifecycleHook = Callable[[str], None]


@dataclass(slots=True)
class PollingHooks:
    on_polling_started: LifecycleHook | None = None
    on_polling_stopped: LifecycleHook | None = None
    on_polling_restart: LifecycleHook | None = None
    on_polling_error: Callable[[Exception], None] | None = None
    on_fatal_error: Callable[[FatalError], None] | None = None

    def started(self) -> None:
        self._call("on_polling_started", POLLING_STARTED)

    def stopped(self) -> None:
        self._call("on_polling_stopped", POLLING_STOPPED)

    def restart(self) -> None:
        self._call("on_polling_restart", POLLING_RESTART)

    def error(self, error: Exception) -> None:
        if self.on_polling_error is None:
            logger.error(
                "polling.error",
                error=str(error),
                error_type=error.__class__.__name__,
            )
            return
        self._call("on_polling_error", error)

    def fatal(self, error: FatalError) -> None:
        if self.on_fatal_error is None:
            logger.critical(
                "polling.fatal",
                error=str(error),
                recovery_error=str(error.recovery_error),
            )
            return
        self._call("on_fatal_error", error)

    def _call(self, name: str, arg: Any) -> None:
        hook = getattr(self, name)
        if hook is None:
            return
        try:
            hook(arg)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "polling.hook_failed",
                hook=name,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .api_schemas import Update

WEBHOOK_CONFLICT_STATUS = 409


class PollingError(Exception):
    pass


class TransportError(PollingError):
    def __init__(
        self,
        description: str,
        *,
        method: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(description)
        self.description = description
        self.method = method
        self.status_code = status_code
        self.retry_after = retry_after


class WebhookConflictError(TransportError):
    """Another consumer has a webhook registered for this bot."""


class ProcessingError(PollingError):
    """The update processor failed on ``update``."""

    def __init__(self, error: Exception, update: Update) -> None:
        super().__init__(f"processing update {update.update_id} failed: {error}")
        self.error = error
        self.update = update
        self.__cause__ = error


class FatalError(PollingError):
    """Stuck-offset recovery failed; redelivery of processed updates is possible."""

    def __init__(self, error: ProcessingError, recovery_error: Exception) -> None:
        super().__init__(str(error))
        self.error = error
        self.recovery_error = recovery_error
        self.__cause__ = recovery_error


def is_webhook_conflict(status_code: int | None) -> bool:
    return status_code == WEBHOOK_CONFLICT_STATUS

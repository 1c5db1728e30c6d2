from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import anyio
from anyio.abc import TaskGroup

from .api_schemas import Update
from .client import UpdateSource
from .errors import (
    FatalError,
    ProcessingError,
    TransportError,
    WebhookConflictError,
)
from .events import PollingHooks
from .logging import get_logger
from .settings import PollingSettings

logger = get_logger(__name__)

ProcessUpdate = Callable[[Update], Awaitable[None]]


@dataclass(slots=True)
class CycleHandle:
    scope: anyio.CancelScope = field(default_factory=anyio.CancelScope)
    done: anyio.Event = field(default_factory=anyio.Event)


@dataclass(slots=True)
class PollingState:
    is_active: bool = False
    in_flight: CycleHandle | None = None
    last_update: float = 0.0
    abort_requested: bool = False
    draining: CycleHandle | None = None
    pending_timer: anyio.CancelScope | None = None
    backoff_s: float = 0.0


class Poller:
    """Fetch updates, hand each to ``process_update`` in order, repeat.

    Exactly one cycle runs at a time. A cycle fetches a batch, advances
    ``params["offset"]`` past each update *before* processing it, and then
    sleeps ``interval`` milliseconds (longer when the transport asks to back
    off) before the next fetch. Failures are absorbed at the cycle boundary
    and reported through ``hooks``.
    """

    def __init__(
        self,
        source: UpdateSource,
        process_update: ProcessUpdate,
        *,
        task_group: TaskGroup,
        settings: PollingSettings | None = None,
        hooks: PollingHooks | None = None,
    ) -> None:
        self._source = source
        self._process_update = process_update
        self._task_group = task_group
        self.settings = settings or PollingSettings()
        self.hooks = hooks or PollingHooks()
        self.params: dict[str, Any] = self.settings.initial_params()
        self.state = PollingState()

    @property
    def is_active(self) -> bool:
        return self.state.is_active

    @property
    def offset(self) -> int:
        return self.params["offset"]

    @property
    def last_update(self) -> float:
        return self.state.last_update

    def is_polling(self) -> bool:
        return self.state.in_flight is not None

    async def start(self, *, restart: bool = False) -> None:
        if self.state.is_active:
            if not restart:
                return
            logger.info("polling.restart")
            self.hooks.restart()
            await self.stop(cancel=True, reason="Polling restart")
            await self._cancel_draining()
        else:
            logger.info("polling.started")
            self.hooks.started()
        self.state.is_active = True
        self._launch()

    async def stop(self, *, cancel: bool = False, reason: str | None = None) -> None:
        state = self.state
        cycle = state.in_flight
        if cycle is None:
            return
        state.in_flight = None
        if state.pending_timer is not None:
            state.pending_timer.cancel()
            state.pending_timer = None
        if cancel:
            logger.info("polling.cancelled", reason=reason or "Polling stop")
            cycle.scope.cancel()
            state.is_active = False
            self.hooks.stopped()
            return
        state.abort_requested = True
        state.draining = cycle
        await cycle.done.wait()
        if state.draining is not cycle:
            # a restart cancelled this cycle and owns the controller now
            return
        state.draining = None
        state.abort_requested = False
        state.is_active = False
        logger.info("polling.stopped", reason=reason)
        self.hooks.stopped()

    async def _cancel_draining(self) -> None:
        state = self.state
        cycle = state.draining
        if cycle is None:
            return
        state.draining = None
        logger.info("polling.cancelled", reason="Polling restart")
        cycle.scope.cancel()
        await cycle.done.wait()
        state.abort_requested = False
        self.hooks.stopped()

    def _launch(self) -> None:
        cycle = CycleHandle()
        self.state.in_flight = cycle
        self._task_group.start_soon(self._run, cycle)

    async def _run(self, cycle: CycleHandle) -> None:
        state = self.state
        while True:
            halt = True
            try:
                with cycle.scope:
                    await self._poll_once()
                halt = cycle.scope.cancel_called or state.abort_requested
            finally:
                cycle.done.set()
            if halt:
                logger.debug("polling.aborted")
                return

            interval_s = max(self.settings.interval_s, state.backoff_s)
            state.backoff_s = 0.0
            logger.debug("polling.reschedule", delay_s=interval_s)
            timer = anyio.CancelScope()
            state.pending_timer = timer
            with timer:
                await anyio.sleep(interval_s)
            if state.pending_timer is timer:
                state.pending_timer = None
            if timer.cancel_called:
                return

            cycle = CycleHandle()
            state.in_flight = cycle

    async def _poll_once(self) -> None:
        try:
            updates = await self._get_updates()
        except Exception as exc:  # noqa: BLE001
            logger.debug("polling.get_updates.failed", error=str(exc))
            if isinstance(exc, TransportError) and exc.retry_after is not None:
                self.state.backoff_s = exc.retry_after
            self.hooks.error(exc)
            return
        self.state.last_update = time.time()
        logger.debug("polling.updates", count=len(updates))
        failure = await self._dispatch(updates)
        if failure is not None:
            await self._handle_processing_error(failure)

    async def _dispatch(self, updates: list[Update]) -> ProcessingError | None:
        for update in updates:
            self.params["offset"] = update.update_id + 1
            logger.debug("polling.offset", offset=self.params["offset"])
            try:
                await self._process_update(update)
            except Exception as exc:  # noqa: BLE001
                # the rest of the batch is fetched again from the advanced offset
                return ProcessingError(exc, update)
        return None

    async def _get_updates(self) -> list[Update]:
        logger.debug("polling.get_updates", params=self.params)
        try:
            return await self._source.get_updates(self.params)
        except WebhookConflictError:
            logger.info("polling.webhook_conflict")
            await self._source.delete_webhook()
            return await self._source.get_updates(self.params)

    async def _handle_processing_error(self, error: ProcessingError) -> None:
        logger.debug(
            "polling.processing_error",
            update_id=error.update.update_id,
            error=str(error.error),
        )
        if not self.settings.bad_rejection_recovery:
            self.hooks.error(error)
            return
        params = {"offset": self.params["offset"], "limit": 1, "timeout": 0}
        try:
            await self._source.get_updates(params)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "polling.offset_recovery_failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
                detail="already-processed updates may be redelivered on restart",
            )
            self.hooks.fatal(FatalError(error, exc))
            return
        self.hooks.error(error)

from collections.abc import Mapping
from typing import Any

import anyio
import pytest

from botpoll.api_schemas import Update
from botpoll.events import PollingHooks
from botpoll.polling import Poller
from botpoll.settings import PollingSettings
from tests.update_fakes import FakeSource, Recorder, updates


class _Journal:
    def __init__(self) -> None:
        self.entries: list[str] = []

    def hooks(self) -> PollingHooks:
        return PollingHooks(
            on_polling_started=lambda _: self.entries.append("started"),
            on_polling_stopped=lambda _: self.entries.append("stopped"),
            on_polling_restart=lambda _: self.entries.append("restart"),
        )


class _GatedSource(FakeSource):
    def __init__(self, batch: list[Update]) -> None:
        super().__init__()
        self.batch = batch
        self.entered = anyio.Event()
        self.release = anyio.Event()
        self.active = 0
        self.peak = 0

    async def get_updates(self, params: Mapping[str, Any]) -> list[Update]:
        self.calls.append(dict(params))
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.entered.set()
        try:
            await self.release.wait()
        finally:
            self.active -= 1
        return self.batch


async def _wait_for_calls(source: FakeSource, count: int) -> None:
    with anyio.fail_after(2):
        while len(source.calls) < count:
            await anyio.sleep(0.01)


@pytest.mark.anyio
async def test_start_twice_keeps_single_cycle_chain() -> None:
    source = FakeSource()
    journal = _Journal()

    async with anyio.create_task_group() as tg:
        poller = Poller(
            source,
            Recorder(),
            task_group=tg,
            settings=PollingSettings(interval=0),
            hooks=journal.hooks(),
        )
        assert not poller.is_polling()
        await poller.start()
        await poller.start()
        with anyio.fail_after(2):
            await source.idle.wait()
        await anyio.sleep(0.05)
        assert poller.is_active
        assert poller.is_polling()
        assert len(source.calls) == 1
        await poller.stop(cancel=True)

    assert journal.entries == ["started", "stopped"]
    assert not poller.is_active
    assert not poller.is_polling()


@pytest.mark.anyio
async def test_restart_cancels_then_relaunches() -> None:
    source = FakeSource()
    journal = _Journal()

    async with anyio.create_task_group() as tg:
        poller = Poller(
            source,
            Recorder(),
            task_group=tg,
            settings=PollingSettings(interval=0),
            hooks=journal.hooks(),
        )
        await poller.start()
        await _wait_for_calls(source, 1)
        await poller.start(restart=True)
        await _wait_for_calls(source, 2)
        assert poller.is_active
        assert poller.is_polling()
        assert journal.entries == ["started", "restart", "stopped"]
        await poller.stop(cancel=True)

    assert len(source.calls) == 2


@pytest.mark.anyio
async def test_stop_without_start_is_noop() -> None:
    journal = _Journal()

    async with anyio.create_task_group() as tg:
        poller = Poller(
            FakeSource(), Recorder(), task_group=tg, hooks=journal.hooks()
        )
        await poller.stop()
        await poller.stop(cancel=True)

    assert journal.entries == []
    assert not poller.is_active


@pytest.mark.anyio
async def test_cancel_discards_in_flight_fetch() -> None:
    source = _GatedSource(updates(1, 2))
    recorder = Recorder()
    journal = _Journal()

    async with anyio.create_task_group() as tg:
        poller = Poller(
            source,
            recorder,
            task_group=tg,
            settings=PollingSettings(interval=0),
            hooks=journal.hooks(),
        )
        await poller.start()
        with anyio.fail_after(2):
            await source.entered.wait()
        await poller.stop(cancel=True)
        assert not poller.is_active
        source.release.set()
        await anyio.sleep(0.05)

    assert recorder.seen == []
    assert poller.offset == 0
    assert len(source.calls) == 1
    assert poller.last_update == 0.0
    assert journal.entries == ["started", "stopped"]


@pytest.mark.anyio
async def test_cancel_interrupts_processing_of_batch() -> None:
    source = FakeSource([updates(1, 2)])
    seen: list[int] = []
    entered = anyio.Event()

    async def process(update: Update) -> None:
        seen.append(update.update_id)
        entered.set()
        await anyio.sleep_forever()

    async with anyio.create_task_group() as tg:
        poller = Poller(
            source, process, task_group=tg, settings=PollingSettings(interval=0)
        )
        await poller.start()
        with anyio.fail_after(2):
            await entered.wait()
        await poller.stop(cancel=True)
        await anyio.sleep(0.05)

    assert seen == [1]
    assert len(source.calls) == 1


@pytest.mark.anyio
async def test_graceful_stop_finishes_current_batch() -> None:
    source = FakeSource([updates(1, 2)])
    journal = _Journal()
    release = anyio.Event()
    entered = anyio.Event()

    async def process(update: Update) -> None:
        if update.update_id == 1:
            entered.set()
            await release.wait()
        journal.entries.append(f"processed {update.update_id}")

    async with anyio.create_task_group() as tg:
        poller = Poller(
            source,
            process,
            task_group=tg,
            settings=PollingSettings(interval=60_000),
            hooks=journal.hooks(),
        )
        await poller.start()
        with anyio.fail_after(2):
            await entered.wait()

        stopped = anyio.Event()

        async def _stop() -> None:
            await poller.stop()
            stopped.set()

        tg.start_soon(_stop)
        await anyio.sleep(0.01)
        assert poller.is_active
        assert not stopped.is_set()
        release.set()
        with anyio.fail_after(2):
            await stopped.wait()

    assert journal.entries == ["started", "processed 1", "processed 2", "stopped"]
    assert len(source.calls) == 1
    assert poller.offset == 3
    assert not poller.is_active
    assert not poller.state.abort_requested


@pytest.mark.anyio
async def test_graceful_stop_between_cycles_cancels_timer() -> None:
    source = FakeSource([updates(1)])
    processed = anyio.Event()

    async def process(update: Update) -> None:
        processed.set()

    async with anyio.create_task_group() as tg:
        poller = Poller(
            source, process, task_group=tg, settings=PollingSettings(interval=60_000)
        )
        await poller.start()
        with anyio.fail_after(2):
            await processed.wait()
        await anyio.sleep(0.01)
        with anyio.fail_after(2):
            await poller.stop()

    assert len(source.calls) == 1
    assert not poller.is_active
    assert poller.state.pending_timer is None


@pytest.mark.anyio
async def test_stop_right_after_start_prevents_fetch_results() -> None:
    source = FakeSource([updates(1)])
    recorder = Recorder()

    async with anyio.create_task_group() as tg:
        poller = Poller(source, recorder, task_group=tg)
        await poller.start()
        assert poller.is_polling()
        await poller.stop(cancel=True)

    assert recorder.seen == []
    assert poller.offset == 0


@pytest.mark.anyio
async def test_failing_hook_does_not_break_start() -> None:
    source = FakeSource()

    def explode(_: str) -> None:
        raise RuntimeError("observer bug")

    async with anyio.create_task_group() as tg:
        poller = Poller(
            source,
            Recorder(),
            task_group=tg,
            hooks=PollingHooks(on_polling_started=explode),
        )
        await poller.start()
        with anyio.fail_after(2):
            await source.idle.wait()
        await poller.stop(cancel=True)

    assert len(source.calls) == 1


@pytest.mark.anyio
async def test_restart_during_graceful_stop_keeps_one_chain() -> None:
    source = _GatedSource(updates(1))
    recorder = Recorder()
    journal = _Journal()

    async with anyio.create_task_group() as tg:
        poller = Poller(
            source,
            recorder,
            task_group=tg,
            settings=PollingSettings(interval=0),
            hooks=journal.hooks(),
        )
        await poller.start()
        with anyio.fail_after(2):
            await source.entered.wait()

        tg.start_soon(poller.stop)
        await anyio.sleep(0.01)
        assert poller.state.draining is not None

        await poller.start(restart=True)
        await _wait_for_calls(source, 2)
        await anyio.sleep(0.05)

        assert source.peak == 1
        assert source.active == 1
        assert poller.is_active
        assert poller.is_polling()
        assert poller.state.draining is None
        assert not poller.state.abort_requested
        assert journal.entries == ["started", "restart", "stopped"]

        await poller.start()
        await anyio.sleep(0.05)
        assert len(source.calls) == 2
        await poller.stop(cancel=True)

    assert recorder.seen == []
    assert not poller.is_active
    assert journal.entries == ["started", "restart", "stopped", "stopped"]

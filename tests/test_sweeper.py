"""Tests for the periodic and on-demand credential sweeper."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from presence_alarm.credentials import CredentialStore, StorageError, SweepReport
from presence_alarm.sweeper import Sweeper

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _store(**sweep_kwargs) -> MagicMock:
    store = MagicMock(spec=CredentialStore)
    if not sweep_kwargs:
        sweep_kwargs = {"return_value": SweepReport(swept_at=T0, removed=["a"])}
    store.sweep = AsyncMock(**sweep_kwargs)
    return store


@pytest.mark.asyncio
async def test_run_once_sweeps_exactly_once():
    store = _store()
    sweeper = Sweeper(store, interval_seconds=3600)

    report = await sweeper.run_once()

    assert report.count == 1
    store.sweep.assert_awaited_once()
    assert sweeper.running is False


@pytest.mark.asyncio
async def test_run_once_propagates_storage_error():
    store = _store(side_effect=StorageError("locked"))
    with pytest.raises(StorageError):
        await Sweeper(store).run_once()


@pytest.mark.asyncio
async def test_periodic_sweeps_until_stopped():
    store = _store()
    sweeper = Sweeper(store, interval_seconds=0.01)

    sweeper.start()
    assert sweeper.running is True
    await asyncio.sleep(0.1)
    await sweeper.stop()

    assert store.sweep.await_count >= 2
    assert sweeper.running is False
    calls = store.sweep.await_count
    await asyncio.sleep(0.05)
    assert store.sweep.await_count == calls


@pytest.mark.asyncio
async def test_stop_interrupts_wait_promptly():
    store = _store()
    sweeper = Sweeper(store, interval_seconds=3600)
    sweeper.start()

    await asyncio.wait_for(sweeper.stop(), timeout=1.0)
    store.sweep.assert_not_awaited()


@pytest.mark.asyncio
async def test_stop_lets_running_sweep_finish():
    started = asyncio.Event()
    release = asyncio.Event()
    finished = []

    async def slow_sweep():
        started.set()
        await release.wait()
        finished.append(True)
        return SweepReport(swept_at=T0)

    store = _store(side_effect=slow_sweep)
    sweeper = Sweeper(store, interval_seconds=0.01)
    sweeper.start()
    await started.wait()

    stopping = asyncio.ensure_future(sweeper.stop())
    await asyncio.sleep(0.02)
    assert not stopping.done()

    release.set()
    await stopping
    assert finished == [True]


@pytest.mark.asyncio
async def test_periodic_loop_survives_failed_sweep():
    calls = 0

    async def flaky_sweep():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise StorageError("locked")
        return SweepReport(swept_at=T0)

    store = _store(side_effect=flaky_sweep)
    sweeper = Sweeper(store, interval_seconds=0.01)
    sweeper.start()
    while store.sweep.await_count < 2:
        await asyncio.sleep(0.01)
    await sweeper.stop()
    assert store.sweep.await_count >= 2


@pytest.mark.asyncio
async def test_single_flight():
    active = 0
    peak = 0

    async def tracked_sweep():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return SweepReport(swept_at=T0)

    store = _store(side_effect=tracked_sweep)
    sweeper = Sweeper(store)

    await asyncio.gather(*(sweeper.run_once() for _ in range(5)))
    assert peak == 1
    assert store.sweep.await_count == 5


@pytest.mark.asyncio
async def test_trigger_is_fire_and_forget():
    store = _store()
    sweeper = Sweeper(store)

    sweeper.trigger()
    store.sweep.assert_not_awaited()

    await sweeper.stop()
    store.sweep.assert_awaited_once()


@pytest.mark.asyncio
async def test_start_is_idempotent():
    sweeper = Sweeper(_store(), interval_seconds=3600)
    sweeper.start()
    task = sweeper._task
    sweeper.start()
    assert sweeper._task is task
    await sweeper.stop()


@pytest.mark.asyncio
async def test_artifact_failures_are_logged(caplog):
    report = SweepReport(swept_at=T0, removed=["a", "b"], artifact_failures=["b"])
    sweeper = Sweeper(_store(return_value=report))

    sweeper.trigger()
    await sweeper.stop()

    assert "could not remove QR code(s) for: b" in caplog.text

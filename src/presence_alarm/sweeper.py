"""Periodic and on-demand removal of expired credentials."""

from __future__ import annotations

import asyncio
import logging

from presence_alarm.credentials import CredentialStore, StorageError, SweepReport

logger = logging.getLogger(__name__)


class Sweeper:
    """Runs ``CredentialStore.sweep`` every *interval_seconds*.

    Periodic and on-demand runs share one lock, so at most one sweep is in
    flight per store. ``stop`` interrupts the wait between runs but lets a
    sweep already underway finish.
    """

    def __init__(self, store: CredentialStore, interval_seconds: float = 3600.0) -> None:
        self._store = store
        self._interval = interval_seconds
        self._run_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._triggered: set[asyncio.Task[SweepReport | None]] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> SweepReport:
        """Perform exactly one sweep and return its report."""
        async with self._run_lock:
            return await self._store.sweep()

    def trigger(self) -> None:
        """Fire-and-forget ``run_once`` for administrative callers."""
        task = asyncio.get_running_loop().create_task(self._guarded_run())
        self._triggered.add(task)
        task.add_done_callback(self._triggered.discard)

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("Sweeper started (interval=%ss).", self._interval)

    async def stop(self) -> None:
        """Stop scheduling sweeps and wait for any in-progress run to finish."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        if self._triggered:
            await asyncio.gather(*list(self._triggered), return_exceptions=True)
        logger.info("Sweeper stopped.")

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                await self._guarded_run()

    async def _guarded_run(self) -> SweepReport | None:
        try:
            report = await self.run_once()
        except StorageError as e:
            logger.error("Credential sweep failed: %s", e)
            return None
        logger.info("Credential sweep removed %d record(s).", report.count)
        if report.artifact_failures:
            logger.warning(
                "Sweep could not remove QR code(s) for: %s",
                ", ".join(report.artifact_failures),
            )
        return report

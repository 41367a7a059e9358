"""Best-effort alarm webhooks (Home Assistant style) fired on occupancy boundaries."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

import httpx

from presence_alarm.occupancy import Transition

logger = logging.getLogger(__name__)


class AlarmSignal(str, Enum):
    ARM = "arm"
    DISARM = "disarm"


_SIGNAL_FOR = {
    Transition.FIRST_ARRIVAL: AlarmSignal.DISARM,
    Transition.LAST_DEPARTURE: AlarmSignal.ARM,
}


class AlarmNotifier:
    """Posts to one of two webhooks when the space becomes occupied or empty.

    Delivery is fire-and-forget: ``dispatch`` schedules the POST and returns
    at once. Deliveries are chained so webhooks reach the endpoint in the
    order their transitions happened. Each attempt is bounded by the client timeout; failures are
    logged and dropped, never retried.
    """

    def __init__(
        self,
        base_url: str,
        arm_webhook_id: str,
        disarm_webhook_id: str,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._webhooks = {
            AlarmSignal.ARM: arm_webhook_id,
            AlarmSignal.DISARM: disarm_webhook_id,
        }
        self._client = httpx.AsyncClient(timeout=timeout_seconds)
        self._pending: set[asyncio.Task[bool]] = set()
        self._tail: asyncio.Task[bool] | None = None

    def webhook_url(self, signal: AlarmSignal) -> str:
        return f"{self._base_url}/api/webhook/{self._webhooks[signal]}"

    def dispatch(self, transition: Transition) -> None:
        """Schedule the webhook for a boundary *transition*; no-op otherwise."""
        signal = _SIGNAL_FOR.get(transition)
        if signal is None:
            return
        task = asyncio.get_running_loop().create_task(
            self._deliver_after(self._tail, signal)
        )
        self._tail = task
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def deliver(self, signal: AlarmSignal) -> bool:
        """Make one POST attempt. Returns whether the endpoint accepted it."""
        url = self.webhook_url(signal)
        try:
            resp = await self._client.post(url)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Alarm %s webhook failed: %s", signal.value, e)
            return False
        logger.info("Alarm %s webhook delivered.", signal.value)
        return True

    async def _deliver_after(
        self, previous: asyncio.Task[bool] | None, signal: AlarmSignal
    ) -> bool:
        if previous is not None:
            await asyncio.wait({previous})
        return await self.deliver(signal)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for in-flight deliveries to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        """Drain in-flight deliveries and close the underlying HTTP client."""
        await self.drain()
        await self._client.aclose()

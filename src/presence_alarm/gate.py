"""The authentication use case: validate, toggle presence, notify the alarm."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from presence_alarm.credentials import CredentialStore
from presence_alarm.notifier import AlarmNotifier
from presence_alarm.occupancy import OccupancyTracker, ToggleResult, Transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthResult:
    authorized: bool
    transition: Transition = Transition.NONE
    present: bool | None = None


class AccessGate:
    """Single control path from a presented credential to the alarm webhook.

    Once the credential validates the caller is authorized, whatever happens
    in the toggle or notification steps afterwards.
    """

    def __init__(
        self,
        store: CredentialStore,
        tracker: OccupancyTracker,
        notifier: AlarmNotifier,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._notifier = notifier

    async def authenticate(self, identity: str, secret: str) -> AuthResult:
        if not await self._store.validate(identity, secret):
            return AuthResult(authorized=False)

        result: ToggleResult | None = None
        try:
            result = self._tracker.toggle(identity)
            self._notifier.dispatch(result.transition)
        except Exception:
            logger.exception("Post-authentication step failed for %s", identity)

        if result is None:
            return AuthResult(authorized=True)
        return AuthResult(
            authorized=True, transition=result.transition, present=result.present
        )

"""Presence tracking: each successful authentication toggles an identity in or out."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum


class Transition(str, Enum):
    """Occupancy boundary event produced by a single toggle."""

    NONE = "none"
    FIRST_ARRIVAL = "first-arrival"
    LAST_DEPARTURE = "last-departure"
    INTERIOR_CHANGE = "interior-change"


@dataclass(frozen=True)
class ToggleResult:
    identity: str
    present: bool
    occupants: int
    transition: Transition


def classify(before: int, after: int) -> Transition:
    """Map set sizes around one mutation to a transition."""
    if before == after:
        return Transition.NONE
    if before == 0 and after == 1:
        return Transition.FIRST_ARRIVAL
    if before == 1 and after == 0:
        return Transition.LAST_DEPARTURE
    return Transition.INTERIOR_CHANGE


class OccupancyTracker:
    """Owns the set of identities currently considered present.

    Empty at start: anyone physically present when the process starts is
    not known until they authenticate (which then counts as an arrival).
    """

    def __init__(self) -> None:
        self._present: set[str] = set()
        self._lock = threading.Lock()

    def toggle(self, identity: str) -> ToggleResult:
        """Insert *identity* if absent, remove it if present.

        The membership check, the mutation and the size comparison happen
        under one lock, so concurrent toggles can never both observe an
        empty set.
        """
        with self._lock:
            before = len(self._present)
            if identity in self._present:
                self._present.discard(identity)
                present = False
            else:
                self._present.add(identity)
                present = True
            after = len(self._present)
        return ToggleResult(
            identity=identity,
            present=present,
            occupants=after,
            transition=classify(before, after),
        )

    def is_present(self, identity: str) -> bool:
        with self._lock:
            return identity in self._present

    def occupants(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._present)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._present)

    def clear(self) -> bool:
        """Forget everyone. Returns True if anyone was recorded as present."""
        with self._lock:
            had_occupants = bool(self._present)
            self._present.clear()
        return had_occupants

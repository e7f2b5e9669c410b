"""Stale counterpart detection.

A cancelled counterpart is handled exactly like a deleted one. Google keeps
cancelled events addressable by id, so a patch against one returns 200 while
the event stays hidden; both states invalidate the mapping.
"""

from __future__ import annotations

import logging
from enum import StrEnum

from calbridge.core.mapping_store import MappingStore
from calbridge.core.records import CounterpartEvent

logger = logging.getLogger(__name__)


class CounterpartState(StrEnum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    MISSING = "missing"

    @property
    def is_stale(self) -> bool:
        return self is not CounterpartState.ACTIVE


class StaleReferenceRecovery:
    def __init__(self, store: MappingStore) -> None:
        self._store = store

    @staticmethod
    def classify(event_id: str, lookup: CounterpartEvent | None) -> CounterpartState:
        if lookup is None:
            return CounterpartState.MISSING
        if lookup.event_id != event_id:
            logger.warning(
                "Lookup for counterpart %s returned a different event %s", event_id, lookup.event_id
            )
        if lookup.is_cancelled:
            return CounterpartState.CANCELLED
        return CounterpartState.ACTIVE

    def invalidate_if_stale(
        self,
        logical_id: str,
        event_id: str,
        lookup: CounterpartEvent | None,
    ) -> CounterpartState:
        """Classify the lookup and drop the mapping when the counterpart is gone."""
        state = self.classify(event_id, lookup)
        if state.is_stale:
            logger.info(
                "Counterpart %s for %s is %s; demoting mapping", event_id, logical_id, state.value
            )
            # Only drop the mapping if it still points at the stale counterpart.
            if self._store.get(logical_id) in (event_id, None):
                self._store.remove(logical_id)
        return state

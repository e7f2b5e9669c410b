"""Calendar collaborator contract consumed by the reconciler."""

from __future__ import annotations

import abc
from datetime import datetime
from typing import Any

from calbridge.core.records import CounterpartEvent, EventDraft


class CalendarGateway(abc.ABC):
    """Provider abstraction used by the reconciliation core."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""
        ...

    @abc.abstractmethod
    async def create_event(self, *, calendar_id: str, draft: EventDraft) -> CounterpartEvent:
        """Create an event."""
        ...

    @abc.abstractmethod
    async def patch_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        draft: EventDraft,
    ) -> CounterpartEvent:
        """Patch an event.

        Raises ``RecoverableNotFound`` when the event no longer exists.
        """
        ...

    @abc.abstractmethod
    async def get_event(self, *, calendar_id: str, event_id: str) -> CounterpartEvent | None:
        """Fetch a single event by id; ``None`` when it is gone."""
        ...

    @abc.abstractmethod
    async def delete_event(self, *, calendar_id: str, event_id: str) -> bool:
        """Delete an event; ``False`` when it was already gone."""
        ...

    @abc.abstractmethod
    async def find_by_private_metadata(
        self,
        *,
        calendar_id: str,
        key: str,
        value: str,
    ) -> list[CounterpartEvent]:
        """Return live events whose private metadata has ``key == value``."""
        ...

    @abc.abstractmethod
    async def search_text(self, *, calendar_id: str, query: str) -> list[CounterpartEvent]:
        """Free-text search over summary/description/location."""
        ...

    @abc.abstractmethod
    async def list_window(
        self,
        *,
        calendar_id: str,
        start_at: datetime,
        end_at: datetime,
    ) -> list[CounterpartEvent]:
        """Return live events overlapping ``[start_at, end_at]``."""
        ...

    @abc.abstractmethod
    async def watch(
        self,
        *,
        calendar_id: str,
        channel_id: str,
        address: str,
        ttl_seconds: int,
    ) -> dict[str, Any]:
        """Register a push-notification channel for the calendar."""
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release provider resources."""
        ...

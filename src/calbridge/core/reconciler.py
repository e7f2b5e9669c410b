"""Create/update/recreate decision for inbound registry records.

Per logical id the reconciler walks a tiny state machine::

    Unmapped --create--> Mapped --update--> Mapped
    Mapped --404/cancelled--> Unmapped --create--> Mapped

Existing counterparts are located by an ordered list of matcher strategies.
The local tiers come first; the remote ones cover counterparts written by
older synchronizations that never populated private metadata.
"""

from __future__ import annotations

import abc
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from calbridge.config import DEFAULT_PRIVATE_METADATA_KEY, DEFAULT_SEARCH_WINDOW_MINUTES
from calbridge.core.dates import DateNormalizer, parse_iso
from calbridge.core.identifiers import (
    IdentifierExtractor,
    IdentifierStrategy,
    synthesize_placeholder_id,
)
from calbridge.core.locks import KeyedLock
from calbridge.core.logging import reset_logical_id_context, set_logical_id_context
from calbridge.core.mapping_store import MappingStore
from calbridge.core.records import CounterpartEvent, EventDraft, LogicalRecord
from calbridge.core.recovery import StaleReferenceRecovery
from calbridge.errors import DateFormatError, RecoverableNotFound, ValidationError
from calbridge.providers.base import CalendarGateway

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY = "Default Event Name"
DEFAULT_DESCRIPTION = "No Description"


class ReconcileAction(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    RECREATED = "recreated"


@dataclass(frozen=True)
class ReconcileResult:
    action: ReconcileAction
    event_id: str
    logical_id: str
    event: CounterpartEvent
    placeholder: bool = False
    identifier_strategy: IdentifierStrategy | None = None
    matched_by: str | None = None


@dataclass(frozen=True)
class DeleteResult:
    logical_id: str
    event_id: str | None
    deleted: bool

    @property
    def found(self) -> bool:
        return self.event_id is not None


@dataclass(frozen=True)
class MatchContext:
    """Everything a matcher may consult; built once per reconciliation."""

    logical_id: str
    calendar_id: str
    draft: EventDraft | None = None
    start_at: datetime | None = None


# ---------------------------------------------------------------------------
# Matcher strategies
# ---------------------------------------------------------------------------


class CounterpartMatcher(abc.ABC):
    """One way of finding the counterpart id for a logical id."""

    name: str = "matcher"

    @abc.abstractmethod
    async def resolve(self, context: MatchContext) -> str | None: ...


class RecentWriteMatcher(CounterpartMatcher):
    name = "recent_write_cache"

    def __init__(self, store: MappingStore) -> None:
        self._store = store

    async def resolve(self, context: MatchContext) -> str | None:
        return self._store.get_recent(context.logical_id)


class MappingStoreMatcher(CounterpartMatcher):
    name = "mapping_store"

    def __init__(self, store: MappingStore) -> None:
        self._store = store

    async def resolve(self, context: MatchContext) -> str | None:
        return self._store.get_durable(context.logical_id)


class PrivateMetadataMatcher(CounterpartMatcher):
    name = "private_metadata"

    def __init__(self, calendar: CalendarGateway, key: str = DEFAULT_PRIVATE_METADATA_KEY) -> None:
        self._calendar = calendar
        self._key = key

    async def resolve(self, context: MatchContext) -> str | None:
        events = await self._calendar.find_by_private_metadata(
            calendar_id=context.calendar_id,
            key=self._key,
            value=context.logical_id,
        )
        for event in events:
            if not event.is_cancelled:
                return event.event_id
        return None


def _owned_by_other(event: CounterpartEvent, key: str, logical_id: str) -> bool:
    owner = event.private_metadata.get(key)
    return bool(owner) and owner != logical_id


def _contains_token(text: str | None, token: str) -> bool:
    if not text:
        return False
    pattern = rf"(?<![A-Za-z0-9]){re.escape(token)}(?![A-Za-z0-9])"
    return re.search(pattern, text) is not None


class DescriptionSearchMatcher(CounterpartMatcher):
    name = "description_search"

    def __init__(self, calendar: CalendarGateway, key: str = DEFAULT_PRIVATE_METADATA_KEY) -> None:
        self._calendar = calendar
        self._key = key

    async def resolve(self, context: MatchContext) -> str | None:
        events = await self._calendar.search_text(
            calendar_id=context.calendar_id,
            query=context.logical_id,
        )
        # Free-text search is fuzzy; require the id as a whole token.
        for event in events:
            if event.is_cancelled or _owned_by_other(event, self._key, context.logical_id):
                continue
            if _contains_token(event.description, context.logical_id) or _contains_token(
                event.summary, context.logical_id
            ):
                return event.event_id
        return None


class TimeWindowMatcher(CounterpartMatcher):
    name = "time_window"

    def __init__(
        self,
        calendar: CalendarGateway,
        extractor: IdentifierExtractor,
        *,
        window: timedelta = timedelta(minutes=DEFAULT_SEARCH_WINDOW_MINUTES),
        private_metadata_key: str = DEFAULT_PRIVATE_METADATA_KEY,
    ) -> None:
        self._calendar = calendar
        self._extractor = extractor
        self._window = window
        self._key = private_metadata_key

    async def resolve(self, context: MatchContext) -> str | None:
        if context.start_at is None:
            return None
        summary = context.draft.summary if context.draft is not None else None
        window_start = context.start_at - self._window
        window_end = context.start_at + self._window
        events = await self._calendar.list_window(
            calendar_id=context.calendar_id,
            start_at=window_start,
            end_at=window_end,
        )
        for event in events:
            if event.is_cancelled or not self._starts_within(event, window_start, window_end):
                continue
            if _owned_by_other(event, self._key, context.logical_id):
                continue
            if event.private_metadata.get(self._key) == context.logical_id:
                return event.event_id
            if self._extractor.has_marker(event.description, context.logical_id):
                return event.event_id
            if event.summary and event.summary == summary:
                return event.event_id
        return None

    @staticmethod
    def _starts_within(event: CounterpartEvent, window_start: datetime, window_end: datetime) -> bool:
        if not event.start:
            return False
        try:
            start = parse_iso(event.start)
        except DateFormatError:
            return False
        return window_start <= start <= window_end


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class EventReconciler:
    """Turn a registry record into exactly one live calendar counterpart."""

    def __init__(
        self,
        *,
        calendar: CalendarGateway,
        store: MappingStore,
        extractor: IdentifierExtractor | None = None,
        normalizer: DateNormalizer | None = None,
        recovery: StaleReferenceRecovery | None = None,
        matchers: list[CounterpartMatcher] | None = None,
        locks: KeyedLock | None = None,
        private_metadata_key: str = DEFAULT_PRIVATE_METADATA_KEY,
        search_window: timedelta = timedelta(minutes=DEFAULT_SEARCH_WINDOW_MINUTES),
        reload_before_read: bool = False,
    ) -> None:
        self._calendar = calendar
        self._store = store
        self._extractor = extractor or IdentifierExtractor()
        self._normalizer = normalizer or DateNormalizer()
        self._recovery = recovery or StaleReferenceRecovery(store)
        self._locks = locks or KeyedLock()
        self._private_metadata_key = private_metadata_key
        self._reload_before_read = reload_before_read
        if matchers is None:
            matchers = [
                RecentWriteMatcher(store),
                MappingStoreMatcher(store),
                PrivateMetadataMatcher(calendar, private_metadata_key),
                DescriptionSearchMatcher(calendar, private_metadata_key),
                TimeWindowMatcher(
                    calendar,
                    self._extractor,
                    window=search_window,
                    private_metadata_key=private_metadata_key,
                ),
            ]
        self._matchers = matchers

    @property
    def matchers(self) -> list[CounterpartMatcher]:
        return list(self._matchers)

    @property
    def extractor(self) -> IdentifierExtractor:
        return self._extractor

    @property
    def normalizer(self) -> DateNormalizer:
        return self._normalizer

    @property
    def store(self) -> MappingStore:
        return self._store

    async def reconcile(self, record: LogicalRecord) -> ReconcileResult:
        """Create, update or recreate the counterpart for *record*.

        Raises
        ------
        ValidationError
            If start or end is missing, or end precedes start.
        DateFormatError
            If a boundary cannot be parsed.
        UpstreamAPIError, UpstreamAuthError
            On unrecoverable calendar failures.
        """
        extraction = self._extractor.extract(record)
        record = extraction.record
        placeholder = not extraction.found
        logical_id = extraction.logical_id or synthesize_placeholder_id()
        if placeholder:
            logger.warning("No identifier found in payload; using placeholder %s", logical_id)

        missing = [name for name in ("start", "end") if not getattr(record, name)]
        if missing:
            raise ValidationError(f"Missing required field(s): {', '.join(missing)}")

        start = self._normalizer.normalize(record.start, record.time_zone)
        end = self._normalizer.normalize(record.end, record.time_zone)
        start_at = self._parsed_or_none(start)
        end_at = self._parsed_or_none(end)
        if start_at is not None and end_at is not None and end_at < start_at:
            raise ValidationError(f"End {end} precedes start {start}")

        draft = self._build_draft(logical_id, record, start, end)
        context = MatchContext(
            logical_id=logical_id,
            calendar_id=record.calendar_id,
            draft=draft,
            start_at=start_at,
        )

        token = set_logical_id_context(logical_id)
        try:
            async with self._locks.hold(logical_id):
                result = await self._reconcile_locked(context, placeholder=placeholder)
        finally:
            reset_logical_id_context(token)

        return ReconcileResult(
            action=result.action,
            event_id=result.event_id,
            logical_id=logical_id,
            event=result.event,
            placeholder=placeholder,
            identifier_strategy=extraction.strategy,
            matched_by=result.matched_by,
        )

    async def delete(self, logical_id: str, *, calendar_id: str) -> DeleteResult:
        """Delete the counterpart of *logical_id* and drop its mapping."""
        token = set_logical_id_context(logical_id)
        try:
            async with self._locks.hold(logical_id):
                if self._reload_before_read:
                    self._store.reload()
                event_id = self._store.get(logical_id)
                if event_id is None:
                    matcher = PrivateMetadataMatcher(self._calendar, self._private_metadata_key)
                    event_id = await matcher.resolve(
                        MatchContext(logical_id=logical_id, calendar_id=calendar_id)
                    )
                if event_id is None:
                    logger.info("No counterpart found for %s; nothing to delete", logical_id)
                    return DeleteResult(logical_id, None, deleted=False)

                deleted = await self._calendar.delete_event(
                    calendar_id=calendar_id, event_id=event_id
                )
                self._store.remove(logical_id)
                if deleted:
                    logger.info("Deleted counterpart %s for %s", event_id, logical_id)
                else:
                    logger.info("Counterpart %s for %s was already gone", event_id, logical_id)
                return DeleteResult(logical_id, event_id, deleted=deleted)
        finally:
            reset_logical_id_context(token)

    async def _reconcile_locked(self, context: MatchContext, *, placeholder: bool) -> _Outcome:
        if self._reload_before_read:
            self._store.reload()

        stale = False
        draft = context.draft
        assert draft is not None
        resolution = None if placeholder else await self._resolve(context)
        if resolution is not None:
            event_id, matched_by = resolution
            try:
                updated: CounterpartEvent | None = await self._calendar.patch_event(
                    calendar_id=context.calendar_id,
                    event_id=event_id,
                    draft=draft,
                )
            except RecoverableNotFound:
                updated = None

            state = self._recovery.invalidate_if_stale(context.logical_id, event_id, updated)
            if not state.is_stale:
                assert updated is not None
                self._store.put(context.logical_id, updated.event_id)
                logger.info(
                    "Updated counterpart %s (matched by %s)", updated.event_id, matched_by
                )
                return _Outcome(ReconcileAction.UPDATED, updated.event_id, updated, matched_by)
            stale = True

        created = await self._calendar.create_event(
            calendar_id=context.calendar_id,
            draft=draft,
        )
        self._store.put(context.logical_id, created.event_id)
        action = ReconcileAction.RECREATED if stale else ReconcileAction.CREATED
        logger.info("%s counterpart %s", action.value.capitalize(), created.event_id)
        return _Outcome(action, created.event_id, created, None)

    async def _resolve(self, context: MatchContext) -> tuple[str, str] | None:
        for matcher in self._matchers:
            event_id = await matcher.resolve(context)
            if event_id:
                logger.debug("Counterpart %s resolved by %s", event_id, matcher.name)
                return event_id, matcher.name
        return None

    def _build_draft(
        self,
        logical_id: str,
        record: LogicalRecord,
        start: str,
        end: str,
    ) -> EventDraft:
        description = self._extractor.embed_marker(
            record.description or DEFAULT_DESCRIPTION, logical_id
        )
        return EventDraft(
            summary=record.summary or DEFAULT_SUMMARY,
            description=description,
            location=record.location,
            start=start,
            end=end,
            time_zone=record.time_zone,
            private_metadata={self._private_metadata_key: logical_id},
        )

    @staticmethod
    def _parsed_or_none(value: str) -> datetime | None:
        try:
            return parse_iso(value)
        except DateFormatError:
            return None


@dataclass(frozen=True)
class _Outcome:
    action: ReconcileAction
    event_id: str
    event: CounterpartEvent
    matched_by: str | None

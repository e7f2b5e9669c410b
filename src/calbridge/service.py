"""Bridge service: the operations exposed over HTTP and the CLI.

Composes the mapping store, the two remote clients and the reconciler. Only
``push_record`` and ``remove_record`` touch the reconciliation core; the
reverse direction (calendar -> registry) is a straight field write.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from calbridge.config import BridgeConfig
from calbridge.core.dates import DateNormalizer, to_registry_format
from calbridge.core.identifiers import EXPLICIT_ID_ALIASES, IdentifierExtractor, is_placeholder_id
from calbridge.core.mapping_store import MappingStore, build_mapping_store
from calbridge.core.reconciler import DeleteResult, EventReconciler, ReconcileResult
from calbridge.core.records import EventStatus, LogicalRecord
from calbridge.errors import CalbridgeError, DateFormatError, ValidationError
from calbridge.providers.base import CalendarGateway
from calbridge.providers.google import GoogleCalendarClient, google_event_to_counterpart
from calbridge.providers.registry import RegistryClient

logger = logging.getLogger(__name__)

DEFAULT_WATCH_TTL_SECONDS = 86400


@dataclass(frozen=True)
class PushOutcome:
    action: str
    logical_id: str
    event_id: str | None
    event: dict[str, Any] | None = None
    placeholder: bool = False


@dataclass(frozen=True)
class PullOutcome:
    action: str
    logical_id: str
    event_id: str
    fields: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ClearOutcome:
    removed: int
    failed: list[str] = field(default_factory=list)


class BridgeService:
    def __init__(
        self,
        *,
        config: BridgeConfig,
        calendar: CalendarGateway,
        registry: RegistryClient,
        store: MappingStore,
        reconciler: EventReconciler | None = None,
    ) -> None:
        self.config = config
        self.calendar = calendar
        self.registry = registry
        self.store = store
        mapping = config.mapping
        self.reconciler = reconciler or EventReconciler(
            calendar=calendar,
            store=store,
            extractor=IdentifierExtractor(
                marker_label=mapping.marker_label,
                explicit_fields=mapping.identifier_fields,
                date_fields=(
                    config.registry.fields.start_field,
                    config.registry.fields.end_field,
                ),
            ),
            normalizer=DateNormalizer(source_timezone=config.registry.source_timezone),
            private_metadata_key=mapping.private_metadata_key,
            search_window=timedelta(minutes=mapping.search_window_minutes),
            reload_before_read=mapping.reload_before_read,
        )

    @classmethod
    def from_config(cls, config: BridgeConfig) -> BridgeService:
        return cls(
            config=config,
            calendar=GoogleCalendarClient.from_config(config.google),
            registry=RegistryClient(config.registry),
            store=build_mapping_store(config.mapping),
        )

    def build_record(self, payload: Any) -> LogicalRecord:
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        return LogicalRecord.from_payload(
            payload,
            fields=self.config.registry.fields,
            cancelled_value=self.config.registry.statuses.cancelled,
            default_calendar_id=self.config.google.default_calendar_id,
            default_timezone=self.config.google.default_timezone,
        )

    async def push_record(self, payload: Any) -> PushOutcome:
        """Registry -> calendar. Cancelled records delete their counterpart."""
        record = self.build_record(payload)

        if record.is_cancelled:
            extraction = self.reconciler.extractor.extract(record)
            if extraction.logical_id is None:
                raise ValidationError("Cancellation payload carries no record identifier")
            deleted = await self.remove_record(extraction.logical_id, calendar_id=record.calendar_id)
            return PushOutcome(
                action="deleted" if deleted.found else "not_found",
                logical_id=deleted.logical_id,
                event_id=deleted.event_id,
            )

        result: ReconcileResult = await self.reconciler.reconcile(record)
        if self.config.registry.mark_pushed and not result.placeholder:
            await self._write_back_status(result.logical_id, self.config.registry.statuses.pushed)
        return PushOutcome(
            action=result.action.value,
            logical_id=result.logical_id,
            event_id=result.event_id,
            event=result.event.model_dump(mode="json"),
            placeholder=result.placeholder,
        )

    async def remove_record(self, logical_id: str, *, calendar_id: str | None = None) -> DeleteResult:
        result = await self.reconciler.delete(
            logical_id,
            calendar_id=calendar_id or self.config.google.default_calendar_id,
        )
        if result.found and not is_placeholder_id(logical_id):
            await self._write_back_status(logical_id, self.config.registry.statuses.cancelled)
        return result

    async def pull_event(self, payload: Any) -> PullOutcome:
        """Calendar -> registry: copy start/end (or the cancellation) onto the record."""
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        raw_event_id = payload.get("id")
        if not isinstance(raw_event_id, str) or not raw_event_id.strip():
            raise ValidationError("Calendar payload is missing the event id")
        event = google_event_to_counterpart(payload)

        logical_id = self._logical_id_for_event(payload, event.event_id)
        if logical_id is None:
            raise ValidationError(f"Cannot resolve a record identifier for event {event.event_id}")

        if event.status is EventStatus.CANCELLED:
            status = self.config.registry.statuses.cancelled
            await self.registry.mark_status(logical_id, status)
            self.store.remove(logical_id)
            return PullOutcome(
                action="cancelled",
                logical_id=logical_id,
                event_id=event.event_id,
                fields={self.config.registry.fields.status_field: status},
            )

        if not event.start or not event.end:
            raise ValidationError("Calendar payload is missing start or end")
        try:
            start = to_registry_format(event.start)
            end = to_registry_format(event.end)
        except DateFormatError as exc:
            raise ValidationError(f"Calendar payload has an invalid date: {exc.raw_value!r}") from exc

        await self.registry.push_times(logical_id, start=start, end=end)
        fields = self.config.registry.fields
        return PullOutcome(
            action="updated",
            logical_id=logical_id,
            event_id=event.event_id,
            fields={fields.start_field: start, fields.end_field: end},
        )

    async def clear_mappings(
        self,
        *,
        delete_counterparts: bool = True,
        calendar_id: str | None = None,
    ) -> ClearOutcome:
        """Operator reset; by default the synced counterparts are deleted too."""
        if not delete_counterparts:
            return ClearOutcome(removed=self.store.clear())

        target_calendar = calendar_id or self.config.google.default_calendar_id
        removed = 0
        failed: list[str] = []
        for mapping in self.store.items():
            try:
                await self.reconciler.delete(mapping.logical_id, calendar_id=target_calendar)
            except CalbridgeError:
                logger.exception("Failed to delete counterpart for %s", mapping.logical_id)
                failed.append(mapping.logical_id)
                continue
            removed += 1
        return ClearOutcome(removed=removed, failed=failed)

    async def register_webhook(
        self,
        address: str,
        *,
        channel_id: str | None = None,
        ttl_seconds: int = DEFAULT_WATCH_TTL_SECONDS,
        calendar_id: str | None = None,
    ) -> dict[str, Any]:
        channel = channel_id or uuid.uuid4().hex
        result = await self.calendar.watch(
            calendar_id=calendar_id or self.config.google.default_calendar_id,
            channel_id=channel,
            address=address,
            ttl_seconds=ttl_seconds,
        )
        logger.info("Registered calendar webhook channel %s -> %s", channel, address)
        return result

    async def shutdown(self) -> None:
        await self.calendar.shutdown()
        await self.registry.shutdown()
        self.store.close()

    def _logical_id_for_event(self, payload: dict[str, Any], event_id: str) -> str | None:
        key = self.config.mapping.private_metadata_key
        extended = payload.get("extendedProperties")
        if isinstance(extended, dict) and isinstance(extended.get("private"), dict):
            value = extended["private"].get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()

        # "id" is the calendar's own event id in this direction.
        explicit_aliases = tuple(alias for alias in EXPLICIT_ID_ALIASES if alias != "id")
        for alias in (*self.config.mapping.identifier_fields, *explicit_aliases):
            value = payload.get(alias)
            if isinstance(value, str) and value.strip():
                return value.strip()

        mapped = self.store.find_logical_id(event_id)
        if mapped is not None:
            return mapped

        # Summary and description only; etag, iCalUID and htmlLink carry digit runs.
        text_only = {
            key: payload[key] for key in ("summary", "description") if isinstance(payload.get(key), str)
        }
        extraction = self.reconciler.extractor.extract(self.build_record(text_only))
        return extraction.logical_id

    async def _write_back_status(self, logical_id: str, status: str) -> None:
        try:
            await self.registry.mark_status(logical_id, status)
        except CalbridgeError:
            logger.warning(
                "Registry status write-back failed for %s; calendar side is already applied",
                logical_id,
                exc_info=True,
            )

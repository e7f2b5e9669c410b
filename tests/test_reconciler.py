"""Tests for EventReconciler: create/update/recreate and counterpart matching."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from calbridge.core.identifiers import IdentifierStrategy
from calbridge.core.logging import get_logical_id_context
from calbridge.core.mapping_store import (
    JsonFileBackend,
    MappingPersistenceError,
    MappingStore,
)
from calbridge.core.reconciler import (
    EventReconciler,
    MappingStoreMatcher,
    ReconcileAction,
)
from calbridge.core.records import CounterpartEvent, LogicalRecord
from calbridge.errors import DateFormatError, UpstreamAPIError, ValidationError

pytestmark = pytest.mark.unit

ER15 = {
    "summary": "ER15 - HPLC",
    "description": "Water test",
    "StartUse": "Feb 27 2025 07:00 PM",
    "EndUse": "Feb 27 2025 08:00 PM",
    "timeZone": "America/New_York",
}


def _record(**overrides) -> LogicalRecord:
    payload = {**ER15, **overrides}
    return LogicalRecord.from_payload({k: v for k, v in payload.items() if v is not None})


class TestCreateAndUpdate:
    async def test_er15_is_created_in_the_event_zone(self, reconciler, calendar, store):
        result = await reconciler.reconcile(_record())

        assert result.action is ReconcileAction.CREATED
        assert result.logical_id == "ER15"
        assert result.identifier_strategy is IdentifierStrategy.SUMMARY_PREFIX
        assert store.get("ER15") == result.event_id

        event = calendar.events[result.event_id]
        assert event.start == "2025-02-27T14:00:00-05:00"
        assert event.end == "2025-02-27T15:00:00-05:00"
        assert event.time_zone == "America/New_York"
        assert event.description == "Water test\n\nRecord ID: ER15"
        assert event.private_metadata == {"alchemyRecordId": "ER15"}

    async def test_resubmission_updates_the_same_counterpart(self, reconciler, calendar):
        first = await reconciler.reconcile(_record())
        second = await reconciler.reconcile(_record(description="Water test, rerun"))

        assert second.action is ReconcileAction.UPDATED
        assert second.event_id == first.event_id
        assert second.matched_by == "recent_write_cache"
        assert len(calendar.live()) == 1
        assert calendar.events[first.event_id].description == (
            "Water test, rerun\n\nRecord ID: ER15"
        )

    async def test_durable_tier_matches_after_cache_expiry(self, calendar, mapping_path):
        store = MappingStore(JsonFileBackend(mapping_path), cache_ttl_seconds=0)
        reconciler = EventReconciler(calendar=calendar, store=store)

        first = await reconciler.reconcile(_record())
        second = await reconciler.reconcile(_record())
        assert second.matched_by == "mapping_store"
        assert second.event_id == first.event_id

    async def test_unsaved_mapping_survives_reload_before_read(self, calendar, tmp_path):
        class ReadOnlyBackend(JsonFileBackend):
            def save(self, mappings):
                raise MappingPersistenceError("read-only volume")

        store = MappingStore(ReadOnlyBackend(tmp_path / "mappings.json"), cache_ttl_seconds=0)
        reconciler = EventReconciler(calendar=calendar, store=store, reload_before_read=True)

        first = await reconciler.reconcile(_record(recordId="300"))
        second = await reconciler.reconcile(_record(recordId="300"))
        assert second.matched_by == "mapping_store"
        assert second.event_id == first.event_id
        assert calendar.count("find_by_private_metadata") == 1

    async def test_defaults_fill_missing_text(self, reconciler, calendar):
        result = await reconciler.reconcile(_record(summary=None, description=None, recordId="4521"))
        event = calendar.events[result.event_id]
        assert event.summary == "Default Event Name"
        assert event.description == "No Description\n\nRecord ID: 4521"

    async def test_nested_start_and_end(self, reconciler, calendar):
        record = LogicalRecord.from_payload(
            {
                "recordId": "4521",
                "start": {"dateTime": "2025-02-27T19:00:00Z"},
                "end": {"dateTime": "2025-02-27T20:00:00Z"},
                "timeZone": "Asia/Kolkata",
            }
        )
        result = await reconciler.reconcile(record)
        assert calendar.events[result.event_id].start == "2025-02-28T00:30:00+05:30"

    async def test_loose_marker_is_not_duplicated(self, reconciler, calendar):
        result = await reconciler.reconcile(
            _record(summary="Lab booking", description="Water test\nrecord id #12345")
        )
        assert result.logical_id == "12345"
        assert calendar.events[result.event_id].description == "Water test\nRecord ID: 12345"

    async def test_logical_id_context_is_reset(self, reconciler):
        await reconciler.reconcile(_record())
        assert get_logical_id_context() is None


class TestIdentifierPrecedence:
    async def test_explicit_field_beats_summary_prefix(self, reconciler, store):
        result = await reconciler.reconcile(_record(recordId="4521"))
        assert result.logical_id == "4521"
        assert store.get("4521") == result.event_id
        assert store.get("ER15") is None


class TestRemoteMatchers:
    async def test_private_metadata_after_mappings_are_lost(self, reconciler, calendar, store):
        first = await reconciler.reconcile(_record())
        store.clear()

        second = await reconciler.reconcile(_record())
        assert second.action is ReconcileAction.UPDATED
        assert second.matched_by == "private_metadata"
        assert second.event_id == first.event_id
        assert store.get("ER15") == first.event_id

    async def test_description_search_finds_legacy_counterpart(self, reconciler, calendar):
        calendar.seed(
            CounterpartEvent(
                event_id="legacy-1",
                summary="HPLC",
                description="Water test\n\nRecord ID: ER15",
                start="2025-02-27T14:00:00-05:00",
                end="2025-02-27T15:00:00-05:00",
            )
        )
        result = await reconciler.reconcile(_record())
        assert result.action is ReconcileAction.UPDATED
        assert result.matched_by == "description_search"
        assert result.event_id == "legacy-1"

    async def test_description_search_requires_whole_token(self, reconciler, calendar):
        calendar.seed(
            CounterpartEvent(
                event_id="legacy-1",
                summary="ER150 - other",
                start="2025-03-01T14:00:00-05:00",
            )
        )
        result = await reconciler.reconcile(_record())
        assert result.action is ReconcileAction.CREATED

    async def test_time_window_matches_by_summary(self, reconciler, calendar):
        calendar.seed(
            CounterpartEvent(
                event_id="legacy-1",
                summary="HPLC booking",
                description="Water test",
                start="2025-02-27T14:02:00-05:00",
                end="2025-02-27T15:00:00-05:00",
            )
        )
        result = await reconciler.reconcile(_record(recordId="4521", summary="HPLC booking"))
        assert result.matched_by == "time_window"
        assert result.event_id == "legacy-1"

    async def test_time_window_ignores_events_outside_the_window(self, reconciler, calendar):
        calendar.seed(
            CounterpartEvent(
                event_id="legacy-1",
                summary="HPLC booking",
                start="2025-02-27T14:30:00-05:00",
            )
        )
        result = await reconciler.reconcile(_record(recordId="4521", summary="HPLC booking"))
        assert result.action is ReconcileAction.CREATED
        assert result.event_id != "legacy-1"

    async def test_time_window_skips_events_owned_by_another_record(
        self, reconciler, calendar, store
    ):
        first = await reconciler.reconcile(_record(recordId="100", summary="HPLC booking"))
        second = await reconciler.reconcile(_record(recordId="200", summary="HPLC booking"))

        assert second.action is ReconcileAction.CREATED
        assert second.event_id != first.event_id
        assert store.get("100") == first.event_id
        assert store.get("200") == second.event_id
        assert calendar.events[first.event_id].private_metadata == {"alchemyRecordId": "100"}
        assert len(calendar.live()) == 2

    async def test_description_search_skips_events_owned_by_another_record(
        self, reconciler, calendar
    ):
        calendar.seed(
            CounterpartEvent(
                event_id="other-1",
                summary="Calibration",
                description="Follow-up for ER15",
                start="2025-03-05T14:00:00-05:00",
                private_metadata={"alchemyRecordId": "ER16"},
            )
        )
        result = await reconciler.reconcile(_record())
        assert result.action is ReconcileAction.CREATED
        assert result.event_id != "other-1"

    async def test_remote_errors_propagate_without_creating(self, reconciler, calendar):
        calendar.find_by_private_metadata = AsyncMock(
            side_effect=UpstreamAPIError(service="google", status_code=500, message="boom")
        )
        with pytest.raises(UpstreamAPIError):
            await reconciler.reconcile(_record())
        assert calendar.count("create") == 0

    async def test_custom_matcher_list(self, calendar, store):
        reconciler = EventReconciler(
            calendar=calendar,
            store=store,
            matchers=[MappingStoreMatcher(store)],
        )
        await reconciler.reconcile(_record())
        store.clear()
        result = await reconciler.reconcile(_record())
        assert result.action is ReconcileAction.CREATED
        assert calendar.count("find_by_private_metadata") == 0


class TestStaleRecovery:
    async def test_missing_counterpart_is_recreated(self, reconciler, calendar, store):
        store.put("ER15", "evt-gone")

        result = await reconciler.reconcile(_record())
        assert result.action is ReconcileAction.RECREATED
        assert result.event_id != "evt-gone"
        assert store.get("ER15") == result.event_id
        assert len(calendar.live()) == 1

    async def test_cancelled_counterpart_behaves_like_missing(self, reconciler, calendar, store):
        first = await reconciler.reconcile(_record())
        calendar.cancel(first.event_id)

        second = await reconciler.reconcile(_record())
        assert second.action is ReconcileAction.RECREATED
        assert second.event_id != first.event_id
        assert store.get("ER15") == second.event_id
        assert [e.event_id for e in calendar.live()] == [second.event_id]

    async def test_deleted_counterpart_is_recreated(self, reconciler, calendar, store):
        first = await reconciler.reconcile(_record())
        calendar.drop(first.event_id)

        second = await reconciler.reconcile(_record())
        assert second.action is ReconcileAction.RECREATED
        assert store.get("ER15") == second.event_id


class TestConcurrency:
    async def test_concurrent_reconciliations_produce_one_counterpart(self, reconciler, calendar):
        results = await asyncio.gather(
            reconciler.reconcile(_record()),
            reconciler.reconcile(_record()),
        )
        assert sorted(r.action.value for r in results) == ["created", "updated"]
        assert results[0].event_id == results[1].event_id
        assert calendar.count("create") == 1
        assert len(calendar.live()) == 1

    async def test_different_ids_run_independently(self, reconciler, calendar):
        results = await asyncio.gather(
            reconciler.reconcile(_record()),
            reconciler.reconcile(_record(recordId="4521", summary="Other booking")),
        )
        assert {r.action for r in results} == {ReconcileAction.CREATED}
        assert len(calendar.live()) == 2


class TestPlaceholder:
    async def test_unidentifiable_record_gets_placeholder(self, reconciler, calendar, store):
        result = await reconciler.reconcile(_record(summary="Lab booking"))

        assert result.placeholder is True
        assert result.logical_id.startswith("auto-")
        assert result.action is ReconcileAction.CREATED
        assert store.get(result.logical_id) == result.event_id
        assert calendar.count("find_by_private_metadata") == 0


class TestValidation:
    async def test_missing_start(self, reconciler, calendar):
        with pytest.raises(ValidationError, match="start"):
            await reconciler.reconcile(_record(StartUse=None))
        assert calendar.calls == []

    async def test_end_before_start(self, reconciler, calendar):
        with pytest.raises(ValidationError, match="precedes"):
            await reconciler.reconcile(_record(EndUse="Feb 27 2025 06:00 PM"))
        assert calendar.calls == []

    async def test_unparseable_date(self, reconciler):
        with pytest.raises(DateFormatError):
            await reconciler.reconcile(_record(StartUse="next tuesday"))


class TestDelete:
    async def test_delete_mapped_counterpart(self, reconciler, calendar, store):
        created = await reconciler.reconcile(_record())

        result = await reconciler.delete("ER15", calendar_id="primary")
        assert result.found
        assert result.deleted
        assert result.event_id == created.event_id
        assert store.get("ER15") is None
        assert created.event_id not in calendar.events

    async def test_delete_falls_back_to_private_metadata(self, reconciler, calendar, store):
        created = await reconciler.reconcile(_record())
        store.clear()

        result = await reconciler.delete("ER15", calendar_id="primary")
        assert result.event_id == created.event_id
        assert result.deleted

    async def test_delete_unknown(self, reconciler):
        result = await reconciler.delete("ER99", calendar_id="primary")
        assert not result.found
        assert not result.deleted

    async def test_delete_already_gone_drops_mapping(self, reconciler, store):
        store.put("ER15", "evt-gone")
        result = await reconciler.delete("ER15", calendar_id="primary")
        assert result.found
        assert not result.deleted
        assert "ER15" not in store

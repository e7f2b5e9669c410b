"""Tests for registry/calendar date normalization."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from calbridge.core.dates import (
    DEFAULT_SOURCE_FORMATS,
    DateNormalizer,
    looks_iso_like,
    normalize_date,
    parse_iso,
    to_registry_format,
)
from calbridge.errors import DateFormatError, ValidationError

pytestmark = pytest.mark.unit

TIMEZONES = ("America/New_York", "UTC", "Asia/Kolkata")
INSTANTS = (
    datetime(2025, 2, 27, 19, 0, tzinfo=UTC),
    datetime(2025, 7, 4, 9, 30, tzinfo=UTC),
    datetime(2024, 12, 31, 23, 45, tzinfo=UTC),
)


class TestRoundTrip:
    @pytest.mark.parametrize("fmt", DEFAULT_SOURCE_FORMATS)
    @pytest.mark.parametrize("target", TIMEZONES)
    def test_every_source_format_preserves_the_instant(self, fmt, target):
        for instant in INSTANTS:
            normalized = normalize_date(instant.strftime(fmt), target_timezone=target)
            assert parse_iso(normalized) == instant

    @pytest.mark.parametrize("target", TIMEZONES)
    def test_iso_input_preserves_the_instant(self, target):
        normalized = normalize_date("2025-02-27T19:00:00+00:00", target_timezone=target)
        assert parse_iso(normalized) == INSTANTS[0]


class TestNormalize:
    def test_registry_format_lands_in_event_zone(self):
        result = normalize_date("Feb 27 2025 07:00 PM", target_timezone="America/New_York")
        assert result == "2025-02-27T14:00:00-05:00"

    def test_non_integer_offset(self):
        result = normalize_date("Feb 27 2025 07:00 PM", target_timezone="Asia/Kolkata")
        assert result == "2025-02-28T00:30:00+05:30"

    def test_summer_offset(self):
        result = normalize_date("Jul 04 2025 09:30 AM", target_timezone="America/New_York")
        assert result == "2025-07-04T05:30:00-04:00"

    def test_source_timezone_applies_to_naive_values(self):
        normalizer = DateNormalizer(source_timezone="America/New_York")
        assert normalizer.normalize("Feb 27 2025 02:00 PM", "UTC") == "2025-02-27T19:00:00+00:00"

    def test_zulu_format_ignores_source_timezone(self):
        normalizer = DateNormalizer(source_timezone="America/New_York")
        assert normalizer.normalize("2025-02-27T19:00:00Z", "UTC") == "2025-02-27T19:00:00+00:00"

    def test_unparseable_iso_like_passes_through(self):
        assert normalize_date("2025-02-30T19:00:00Z") == "2025-02-30T19:00:00Z"

    @pytest.mark.parametrize("raw", ["next tuesday", "27/02/2025 7pm", ""])
    def test_unknown_format_raises(self, raw):
        with pytest.raises(DateFormatError):
            normalize_date(raw)

    def test_date_format_error_is_a_validation_error(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_date("next tuesday")
        assert exc_info.value.raw_value == "next tuesday"

    def test_unknown_target_zone_raises(self):
        with pytest.raises(DateFormatError):
            normalize_date("Feb 27 2025 07:00 PM", target_timezone="Mars/Olympus")

    def test_unknown_source_zone_fails_at_construction(self):
        with pytest.raises(DateFormatError):
            DateNormalizer(source_timezone="Mars/Olympus")

    def test_custom_source_formats(self):
        normalizer = DateNormalizer(("%d.%m.%Y %H:%M",))
        assert normalizer.normalize("27.02.2025 19:00", "UTC") == "2025-02-27T19:00:00+00:00"


class TestRegistryFormat:
    def test_offset_value_is_written_as_utc(self):
        assert to_registry_format("2025-02-27T14:00:00-05:00") == "2025-02-27T19:00:00Z"

    def test_naive_value_is_treated_as_utc(self):
        assert to_registry_format("2025-02-27T19:00:00") == "2025-02-27T19:00:00Z"

    def test_normalizer_delegates(self):
        assert DateNormalizer().to_registry_format("2025-02-28T00:30:00+05:30") == (
            "2025-02-27T19:00:00Z"
        )

    def test_invalid_value_raises(self):
        with pytest.raises(DateFormatError):
            to_registry_format("not a date")


class TestHelpers:
    def test_looks_iso_like(self):
        assert looks_iso_like("2025-02-30T19:00:00Z")
        assert looks_iso_like("2025-02-27T19:00:00+05:30")
        assert not looks_iso_like("Feb 27 2025 07:00 PM")

    def test_parse_iso_default_zone(self):
        assert parse_iso("2025-02-27T19:00:00").tzinfo is UTC

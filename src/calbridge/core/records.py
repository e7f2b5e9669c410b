"""Typed shapes shared by the reconciliation core.

``LogicalRecord.from_payload`` is the single place where the open set of
inbound field aliases is folded onto a fixed schema; everything downstream
reads the typed attributes and never probes the raw payload for alternates.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from calbridge.config import (
    DEFAULT_CALENDAR_ID,
    DEFAULT_TIMEZONE,
    RegistryFieldConfig,
)

TITLE_ALIASES = ("summary", "title", "event_name")
BODY_ALIASES = ("description", "notes", "details")
LOCATION_ALIASES = ("location", "where")
CALENDAR_ALIASES = ("calendarId", "calendar_id", "calendar")
TIMEZONE_ALIASES = ("timeZone", "timezone", "time_zone")
START_ALIASES = ("start_time", "startTime", "start")
END_ALIASES = ("end_time", "endTime", "end")
CANCELLED_STATUS = "cancelled"


class RecordStatus(StrEnum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class EventStatus(StrEnum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return str(value)
    return None


def _first_text(payload: dict[str, Any], aliases: tuple[str, ...]) -> str | None:
    for alias in aliases:
        value = _text(payload.get(alias))
        if value is not None:
            return value
    return None


def _boundary(payload: dict[str, Any], nested_key: str, aliases: tuple[str, ...]) -> str | None:
    """Resolve a start/end value; ``{"start": {"dateTime": ...}}`` wins."""
    nested = payload.get(nested_key)
    if isinstance(nested, dict):
        value = _text(nested.get("dateTime")) or _text(nested.get("date"))
        if value is not None:
            return value
    for alias in aliases:
        if alias == nested_key and isinstance(payload.get(alias), dict):
            continue
        value = _text(payload.get(alias))
        if value is not None:
            return value
    return None


class LogicalRecord(BaseModel):
    """Registry-side view of a schedulable item."""

    model_config = ConfigDict(frozen=True)

    logical_id: str | None = None
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: str | None = None
    end: str | None = None
    time_zone: str = DEFAULT_TIMEZONE
    calendar_id: str = DEFAULT_CALENDAR_ID
    status: RecordStatus = RecordStatus.ACTIVE
    raw: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(
        cls,
        payload: dict[str, Any],
        *,
        fields: RegistryFieldConfig | None = None,
        cancelled_value: str | None = None,
        default_calendar_id: str = DEFAULT_CALENDAR_ID,
        default_timezone: str = DEFAULT_TIMEZONE,
    ) -> LogicalRecord:
        """Fold an inbound payload's field aliases onto the fixed schema.

        The logical id is left unset; ``IdentifierExtractor`` resolves it from
        ``raw`` so that its strategy order is the only precedence rule.
        """
        field_names = fields or RegistryFieldConfig()
        start_aliases = (field_names.start_field, *START_ALIASES)
        end_aliases = (field_names.end_field, *END_ALIASES)

        status_value = _text(payload.get(field_names.status_field)) or _text(payload.get("status"))
        cancelled_values = {CANCELLED_STATUS}
        if cancelled_value:
            cancelled_values.add(cancelled_value.strip().lower())
        status = (
            RecordStatus.CANCELLED
            if status_value is not None and status_value.lower() in cancelled_values
            else RecordStatus.ACTIVE
        )

        return cls(
            summary=_first_text(payload, TITLE_ALIASES),
            description=_first_text(payload, BODY_ALIASES),
            location=_first_text(payload, LOCATION_ALIASES),
            start=_boundary(payload, "start", start_aliases),
            end=_boundary(payload, "end", end_aliases),
            time_zone=_first_text(payload, TIMEZONE_ALIASES) or default_timezone,
            calendar_id=_first_text(payload, CALENDAR_ALIASES) or default_calendar_id,
            status=status,
            raw=dict(payload),
        )

    @property
    def is_cancelled(self) -> bool:
        return self.status is RecordStatus.CANCELLED


class CounterpartEvent(BaseModel):
    """Calendar-side view of a logical record."""

    event_id: str
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: str | None = None
    end: str | None = None
    time_zone: str | None = None
    private_metadata: dict[str, str] = Field(default_factory=dict)
    status: EventStatus = EventStatus.CONFIRMED
    updated: datetime | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status is EventStatus.CANCELLED


class EventDraft(BaseModel):
    """Normalized body sent to the calendar on create/patch."""

    summary: str
    description: str
    location: str | None = None
    start: str
    end: str
    time_zone: str
    private_metadata: dict[str, str] = Field(default_factory=dict)

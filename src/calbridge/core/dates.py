"""Date normalization between registry formats and calendar ISO-8601.

Registry timestamps arrive as wall-clock strings in a handful of formats
(``Feb 27 2025 07:00 PM`` being the common one) and are expressed in the
registry's source zone (UTC by default). The calendar wants ISO-8601 with an
explicit offset in the event's own zone.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from datetime import UTC, datetime, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calbridge.errors import DateFormatError

logger = logging.getLogger(__name__)

# Most specific / most likely first.
DEFAULT_SOURCE_FORMATS: tuple[str, ...] = (
    "%b %d %Y %I:%M %p",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %H:%M",
)
REGISTRY_WRITE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# A time separator and a trailing zone designator or numeric offset.
_ISO_LIKE_PATTERN = re.compile(r"\d{4}-?\d{2}-?\d{2}T\d{2}.*(?:Z|[+-]\d{2}:?\d{2})$")


def _coerce_zone(name: str) -> tzinfo:
    if name.upper() in ("UTC", "Z"):
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise DateFormatError(name, f"Unknown timezone: {name!r}") from exc


def _render(value: datetime) -> str:
    # isoformat() keeps microseconds only when they are non-zero.
    return value.isoformat()


def looks_iso_like(value: str) -> bool:
    return bool(_ISO_LIKE_PATTERN.search(value.strip()))


def parse_iso(value: str, *, default_zone: tzinfo = UTC) -> datetime:
    """Parse an ISO-8601 string; naive values are placed in *default_zone*.

    Raises ``DateFormatError`` when the string is not valid ISO-8601.
    """
    normalized = value.strip()
    if normalized.endswith(("Z", "z")):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise DateFormatError(value) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_zone)
    return parsed


def _strict_parse(value: str, fmt: str, source_zone: tzinfo) -> datetime | None:
    try:
        parsed = datetime.strptime(value, fmt)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        return parsed
    if fmt.endswith("Z"):
        return parsed.replace(tzinfo=UTC)
    return parsed.replace(tzinfo=source_zone)


def normalize_date(
    raw: str,
    source_formats: Sequence[str] = DEFAULT_SOURCE_FORMATS,
    target_timezone: str = "UTC",
    *,
    source_timezone: str = "UTC",
) -> str:
    """Return *raw* as ISO-8601 in *target_timezone*.

    Order: each source format (strict), then generic ISO-8601, then an
    unchanged passthrough for ISO-looking strings that failed to parse. The
    passthrough is not re-zoned.

    Raises
    ------
    DateFormatError
        If nothing matched and the value is not ISO-like, or a zone is unknown.
    """
    if raw is None or not str(raw).strip():
        raise DateFormatError(str(raw), "Date value is empty")

    value = str(raw).strip()
    target_zone = _coerce_zone(target_timezone)
    source_zone = _coerce_zone(source_timezone)

    for fmt in source_formats:
        parsed = _strict_parse(value, fmt, source_zone)
        if parsed is not None:
            return _render(parsed.astimezone(target_zone))

    try:
        parsed = parse_iso(value, default_zone=source_zone)
    except DateFormatError:
        pass
    else:
        return _render(parsed.astimezone(target_zone))

    if looks_iso_like(value):
        logger.warning("Passing through unparseable ISO-like date %r without re-zoning", value)
        return value

    raise DateFormatError(value)


class DateNormalizer:
    """Configured front-end over :func:`normalize_date`."""

    def __init__(
        self,
        source_formats: Sequence[str] = DEFAULT_SOURCE_FORMATS,
        *,
        source_timezone: str = "UTC",
    ) -> None:
        self.source_formats = tuple(source_formats)
        self.source_timezone = source_timezone
        # Fail at construction rather than on the first request.
        _coerce_zone(source_timezone)

    def normalize(self, raw: str, target_timezone: str) -> str:
        return normalize_date(
            raw,
            self.source_formats,
            target_timezone,
            source_timezone=self.source_timezone,
        )

    def to_registry_format(self, value: str) -> str:
        """Convert a calendar timestamp into the registry's UTC write format."""
        return to_registry_format(value)


def to_registry_format(value: str) -> str:
    """``2025-02-27T14:00:00-05:00`` -> ``2025-02-27T19:00:00Z``; naive input is UTC."""
    parsed = parse_iso(value, default_zone=UTC)
    return parsed.astimezone(UTC).strftime(REGISTRY_WRITE_FORMAT)

"""Logical identifier extraction from loosely-structured payloads.

Strategies run in a fixed order and the first match wins; the order is the
tie-break between conflicting signals (an explicit ``recordId`` always beats a
prefix code in the summary, which beats anything found in the description).
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from calbridge.config import DEFAULT_END_FIELD, DEFAULT_MARKER_LABEL, DEFAULT_START_FIELD
from calbridge.core.records import (
    END_ALIASES,
    START_ALIASES,
    TIMEZONE_ALIASES,
    LogicalRecord,
)

logger = logging.getLogger(__name__)

EXPLICIT_ID_ALIASES = ("recordId", "record_id", "id", "logicalId", "logical_id")
PLACEHOLDER_PREFIX = "auto-"

# Letters followed by digits, e.g. ER15 or HPLC204.
_PREFIX_CODE = r"[A-Za-z]{1,4}\d{1,6}"
_SUMMARY_PREFIX_PATTERN = re.compile(rf"^\s*({_PREFIX_CODE})(?![A-Za-z0-9])")
_DESCRIPTION_PREFIX_PATTERN = re.compile(rf"(?<![A-Za-z0-9])({_PREFIX_CODE})(?![A-Za-z0-9])")
_NUMERIC_TOKEN_PATTERN = re.compile(r"(?<!\d)(\d{4,8})(?!\d)")


class IdentifierStrategy(StrEnum):
    EXPLICIT_FIELD = "explicit_field"
    SUMMARY_PREFIX = "summary_prefix"
    DESCRIPTION_PREFIX = "description_prefix"
    DESCRIPTION_MARKER = "description_marker"
    PAYLOAD_NUMERIC = "payload_numeric"


@dataclass(frozen=True)
class Extraction:
    """Outcome of identifier extraction.

    ``record`` is the input record, or a copy with a normalized description
    when the marker had to be rewritten.
    """

    logical_id: str | None
    strategy: IdentifierStrategy | None
    record: LogicalRecord

    @property
    def found(self) -> bool:
        return self.logical_id is not None


def synthesize_placeholder_id(now: float | None = None) -> str:
    """Time-based placeholder id with a random suffix for unidentifiable records."""
    millis = int((time.time() if now is None else now) * 1000)
    return f"{PLACEHOLDER_PREFIX}{millis}-{secrets.token_hex(3)}"


def is_placeholder_id(logical_id: str) -> bool:
    return logical_id.startswith(PLACEHOLDER_PREFIX)


def _scalar_text(value: Any) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class IdentifierExtractor:
    """Derive a logical id from a record using ordered, first-match strategies."""

    def __init__(
        self,
        *,
        marker_label: str = DEFAULT_MARKER_LABEL,
        explicit_fields: tuple[str, ...] = (),
        date_fields: tuple[str, ...] = (DEFAULT_START_FIELD, DEFAULT_END_FIELD),
    ) -> None:
        self._marker_label = marker_label
        # Configured field names go first, then the built-in aliases.
        self._explicit_fields = tuple(dict.fromkeys((*explicit_fields, *EXPLICIT_ID_ALIASES)))
        self._date_fields = frozenset((*date_fields, *START_ALIASES, *END_ALIASES, *TIMEZONE_ALIASES))
        label_pattern = r"\s*".join(re.escape(part) for part in marker_label.split())
        self._marker_pattern = re.compile(rf"{label_pattern}\s*[:#]\s*(\d+)", re.IGNORECASE)

    @property
    def marker_label(self) -> str:
        return self._marker_label

    def marker_for(self, logical_id: str) -> str:
        return f"{self._marker_label}: {logical_id}"

    def has_marker(self, description: str | None, logical_id: str) -> bool:
        return bool(description) and self.marker_for(logical_id) in description

    def embed_marker(self, description: str | None, logical_id: str) -> str:
        """Append the canonical marker unless it is already present."""
        if self.has_marker(description, logical_id):
            return description or ""
        marker = self.marker_for(logical_id)
        if not description:
            return marker
        return f"{description.rstrip()}\n\n{marker}"

    def extract(self, record: LogicalRecord) -> Extraction:
        explicit = self._from_explicit_field(record.raw)
        if explicit is not None:
            return Extraction(explicit, IdentifierStrategy.EXPLICIT_FIELD, record)

        if record.summary:
            match = _SUMMARY_PREFIX_PATTERN.match(record.summary)
            if match:
                return Extraction(match.group(1), IdentifierStrategy.SUMMARY_PREFIX, record)

        if record.description:
            match = _DESCRIPTION_PREFIX_PATTERN.search(record.description)
            if match:
                return Extraction(match.group(1), IdentifierStrategy.DESCRIPTION_PREFIX, record)

            match = self._marker_pattern.search(record.description)
            if match:
                logical_id = match.group(1)
                normalized = self._normalize_marker(record, match)
                return Extraction(logical_id, IdentifierStrategy.DESCRIPTION_MARKER, normalized)

        numeric = self._from_serialized_payload(record.raw)
        if numeric is not None:
            return Extraction(numeric, IdentifierStrategy.PAYLOAD_NUMERIC, record)

        return Extraction(None, None, record)

    def _from_explicit_field(self, payload: dict[str, Any]) -> str | None:
        for name in self._explicit_fields:
            value = _scalar_text(payload.get(name))
            if value is not None:
                return value
        return None

    def _normalize_marker(self, record: LogicalRecord, match: re.Match) -> LogicalRecord:
        """Rewrite a loosely-formatted marker into its canonical form."""
        canonical = self.marker_for(match.group(1))
        if match.group(0) == canonical:
            return record
        description = record.description or ""
        rewritten = f"{description[: match.start()]}{canonical}{description[match.end() :]}"
        logger.debug("Normalized description marker %r -> %r", match.group(0), canonical)
        return record.model_copy(update={"description": rewritten})

    def _from_serialized_payload(self, payload: dict[str, Any]) -> str | None:
        filtered = {
            key: value
            for key, value in payload.items()
            if key not in self._date_fields and not isinstance(value, dict)
        }
        if not filtered:
            return None
        serialized = json.dumps(filtered, sort_keys=True, default=str)
        match = _NUMERIC_TOKEN_PATTERN.search(serialized)
        return match.group(1) if match else None

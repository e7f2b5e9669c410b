"""Response envelopes for the webhook API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EventResponse(_CamelModel):
    success: bool = True
    action: str
    logical_id: str
    event_id: str | None = None
    placeholder: bool = False
    event: dict[str, Any] | None = None


class DeleteResponse(_CamelModel):
    success: bool
    logical_id: str
    event_id: str | None = None
    message: str


class PullResponse(_CamelModel):
    success: bool = True
    action: str
    logical_id: str
    event_id: str
    fields: dict[str, str]


class MappingEntry(_CamelModel):
    logical_id: str
    event_id: str
    updated_at: datetime


class MappingListResponse(_CamelModel):
    count: int
    mappings: list[MappingEntry]


class MappingCountResponse(_CamelModel):
    success: bool = True
    count: int

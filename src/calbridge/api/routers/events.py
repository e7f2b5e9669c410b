"""Webhook endpoints for both sync directions.

- ``POST /create-event`` and ``PUT /update-event``: registry -> calendar
- ``DELETE /delete-event/{record_id}``: registry-driven removal
- ``PUT /update-alchemy``: calendar -> registry
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from calbridge.api.deps import get_service
from calbridge.api.models import DeleteResponse, EventResponse, PullResponse
from calbridge.errors import ValidationError
from calbridge.service import BridgeService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Request body must be valid JSON") from exc


async def _push(request: Request, service: BridgeService) -> EventResponse:
    payload = await _json_body(request)
    logger.info("Registry request received on %s", request.url.path)
    logger.debug("Registry payload: %s", payload)
    outcome = await service.push_record(payload)
    return EventResponse(
        success=outcome.action != "not_found",
        action=outcome.action,
        logical_id=outcome.logical_id,
        event_id=outcome.event_id,
        placeholder=outcome.placeholder,
        event=outcome.event,
    )


@router.post("/create-event", response_model=EventResponse, response_model_by_alias=True)
async def create_event(
    request: Request,
    service: BridgeService = Depends(get_service),
) -> EventResponse:
    """Create or update the counterpart of a registry record."""
    return await _push(request, service)


@router.put("/update-event", response_model=EventResponse, response_model_by_alias=True)
async def update_event(
    request: Request,
    service: BridgeService = Depends(get_service),
) -> EventResponse:
    """Same reconciliation as ``/create-event``; kept for the registry's update hook."""
    return await _push(request, service)


@router.delete("/delete-event/{record_id}", response_model=DeleteResponse)
async def delete_event(
    record_id: str,
    calendar_id: str | None = Query(default=None, alias="calendarId"),
    service: BridgeService = Depends(get_service),
):
    """Delete the counterpart of a registry record; 404 when none exists."""
    result = await service.remove_record(record_id, calendar_id=calendar_id)
    if not result.found:
        body = DeleteResponse(
            success=False,
            logical_id=record_id,
            message=f"No calendar event found for record: {record_id}",
        )
        return JSONResponse(status_code=404, content=body.model_dump(by_alias=True))
    return DeleteResponse(
        success=True,
        logical_id=record_id,
        event_id=result.event_id,
        message=f"Event successfully deleted for record: {record_id}",
    )


@router.put("/update-alchemy", response_model=PullResponse, response_model_by_alias=True)
async def update_registry(
    request: Request,
    service: BridgeService = Depends(get_service),
) -> PullResponse:
    """Copy a calendar change back onto its registry record."""
    payload = await _json_body(request)
    logger.info("Calendar update received for registry write-back")
    outcome = await service.pull_event(payload)
    return PullResponse(
        action=outcome.action,
        logical_id=outcome.logical_id,
        event_id=outcome.event_id,
        fields=outcome.fields,
    )

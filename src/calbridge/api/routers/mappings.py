"""Operator endpoints over the mapping store, mounted at ``/mappings``."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from calbridge.api.deps import get_service
from calbridge.api.models import MappingCountResponse, MappingEntry, MappingListResponse
from calbridge.service import BridgeService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/mappings", tags=["mappings"])


@router.get("", response_model=MappingListResponse)
async def list_mappings(service: BridgeService = Depends(get_service)) -> MappingListResponse:
    entries = [
        MappingEntry(logical_id=m.logical_id, event_id=m.event_id, updated_at=m.updated_at)
        for m in service.store.items()
    ]
    return MappingListResponse(count=len(entries), mappings=entries)


@router.delete("/{logical_id}", response_model=MappingCountResponse)
async def remove_mapping(
    logical_id: str,
    service: BridgeService = Depends(get_service),
) -> MappingCountResponse:
    """Drop one mapping without touching the calendar."""
    if not service.store.remove(logical_id):
        raise HTTPException(status_code=404, detail=f"No mapping for {logical_id}")
    logger.info("Operator removed mapping %s", logical_id)
    return MappingCountResponse(count=1)


@router.post("/reload", response_model=MappingCountResponse)
async def reload_mappings(service: BridgeService = Depends(get_service)) -> MappingCountResponse:
    return MappingCountResponse(count=service.store.reload())

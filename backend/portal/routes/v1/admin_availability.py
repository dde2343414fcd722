# backend/portal/routes/v1/admin_availability.py
"""
Admin availability routes.

Endpoints:
    POST / - Block timeslots on a date
    GET / - Blocked timeslots, optionally within a date range
    DELETE /{block_id} - Remove a block
"""

from datetime import date
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from ...api.dependencies import get_availability_service
from ...schemas.availability import UnavailableSlotCreate, UnavailableSlotResponse
from ...services.availability_service import AvailabilityService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin-availability"])


@router.post("", response_model=UnavailableSlotResponse, status_code=status.HTTP_201_CREATED)
def block_slots(
    payload: UnavailableSlotCreate,
    service: AvailabilityService = Depends(get_availability_service),
) -> UnavailableSlotResponse:
    block = service.block(payload.date, payload.timeslots, reason=payload.reason)
    return UnavailableSlotResponse.model_validate(block)


@router.get("", response_model=List[UnavailableSlotResponse])
def list_blocked_slots(
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    service: AvailabilityService = Depends(get_availability_service),
) -> List[UnavailableSlotResponse]:
    return [UnavailableSlotResponse.model_validate(b) for b in service.list_blocks(start, end, limit)]


@router.delete("/{block_id}", status_code=status.HTTP_204_NO_CONTENT)
def unblock_slots(
    block_id: str,
    service: AvailabilityService = Depends(get_availability_service),
) -> Response:
    service.unblock(block_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

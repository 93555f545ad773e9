# backend/studybuddy/routes/v1/availability.py
"""
Availability API Routes - API v1

Endpoints:
    GET /{tutor_id}/availability → Bookable slots for a date window
"""

import asyncio
from datetime import date
import logging
from fastapi import APIRouter, Depends, Query

from ...api.dependencies.auth import UserPrincipal, get_current_user
from ...api.dependencies.services import get_availability_service
from ...core.config import settings
from ...core.exceptions import DomainException
from ...schemas.availability import AvailabilityResponse, BookingSlotResponse
from ...services.availability_service import AvailabilityService
from .sessions import handle_domain_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["availability-v1"])


@router.get("/{tutor_id}/availability", response_model=AvailabilityResponse)
async def get_tutor_availability(
    tutor_id: str,
    start_date: date = Query(..., description="First day of the window (tutor local date)"),
    days: int = Query(
        7,
        ge=1,
        le=settings.availability_horizon_days,
        description="Number of days in the window, at most the booking horizon",
    ),
    duration_minutes: int = Query(60, description="Requested session length"),
    available_only: bool = Query(False, description="Drop slots that are already taken"),
    current_user: UserPrincipal = Depends(get_current_user),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> AvailabilityResponse:
    """
    List candidate slots for a tutor.

    Slots are computed from the tutor's weekly schedule minus existing
    sessions and clamped to the booking horizon.
    """
    try:
        result = await asyncio.to_thread(
            availability_service.get_available_slots,
            tutor_id,
            start_date,
            days,
            duration_minutes,
        )
        timezone_name = await asyncio.to_thread(availability_service.tutor_timezone, tutor_id)
    except DomainException as exc:
        handle_domain_exception(exc)

    slots = result.available_slots if available_only else result.slots
    return AvailabilityResponse(
        tutor_id=tutor_id,
        timezone=timezone_name,
        has_availability=result.has_availability,
        slots=[BookingSlotResponse.model_validate(slot.to_dict()) for slot in slots],
    )

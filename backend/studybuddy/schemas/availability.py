# backend/studybuddy/schemas/availability.py
"""Availability slot DTOs."""

from datetime import date, datetime
from typing import List

from pydantic import Field

from ._strict_base import StrictModel


class BookingSlotResponse(StrictModel):
    """One candidate slot, in the tutor's local time with its UTC instant."""

    date: date
    start_time: str = Field(..., description="Local start, HH:MM")
    end_time: str = Field(..., description="Local end, HH:MM")
    duration_minutes: int
    available: bool
    start_utc: datetime
    end_utc: datetime


class AvailabilityResponse(StrictModel):
    tutor_id: str
    timezone: str
    has_availability: bool
    slots: List[BookingSlotResponse]

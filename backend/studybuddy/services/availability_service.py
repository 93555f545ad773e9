# backend/studybuddy/services/availability_service.py
"""Loads a tutor's schedule and bookings and resolves bookable slots."""

from datetime import date, datetime, time, timedelta
import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import NotFoundException
from ..repositories.factory import RepositoryFactory
from ..utils.time import as_utc, utcnow
from .availability_resolver import (
    AvailabilityResult,
    BookedInterval,
    TimeRange,
    fits_availability,
    get_timezone,
    resolve_slots,
    validate_slot_duration,
)
from .base import BaseService

logger = logging.getLogger(__name__)


class AvailabilityService(BaseService):
    """I/O wrapper around ``resolve_slots``."""

    def __init__(self, db: Session):
        super().__init__(db)
        self.tutor_repository = RepositoryFactory.create_tutor_profile_repository(db)
        self.availability_repository = RepositoryFactory.create_availability_repository(db)
        self.session_repository = RepositoryFactory.create_session_repository(db)

    def get_weekly_ranges(self, tutor_id: str) -> Dict[int, List[TimeRange]]:
        rows = self.availability_repository.get_weekly_ranges(tutor_id)
        return {
            weekday: [TimeRange(row.start_time, row.end_time) for row in ranges]
            for weekday, ranges in rows.items()
        }

    def tutor_timezone(self, tutor_id: str) -> str:
        profile = self.tutor_repository.get_by_user_id(tutor_id)
        return (profile.timezone if profile else None) or settings.default_timezone

    @BaseService.measure_operation("get_available_slots")
    def get_available_slots(
        self,
        tutor_id: str,
        window_start: date,
        window_days: int = 7,
        duration_minutes: int = 60,
        today: Optional[date] = None,
    ) -> AvailabilityResult:
        """
        Resolve slots for a tutor.

        ``today`` is the tutor-local current date unless supplied; the window
        is clamped to the booking horizon from that day.
        """
        profile = self.tutor_repository.get_by_user_id(tutor_id)
        if not profile:
            raise NotFoundException("Tutor not found", details={"tutor_id": tutor_id})

        tz_name = profile.timezone or settings.default_timezone
        zone = get_timezone(tz_name)
        if today is None:
            today = utcnow().astimezone(zone).date()

        weekly = self.get_weekly_ranges(tutor_id)
        if not weekly:
            self.logger.info(f"Tutor {tutor_id} has no availability configured")

        horizon_end = today + timedelta(days=settings.availability_horizon_days)
        if window_days >= 1 and window_start >= horizon_end:
            # Nothing is listed past the booking horizon
            validate_slot_duration(duration_minutes)
            return AvailabilityResult(slots=[], has_availability=any(weekly.values()))
        window_days = min(window_days, (horizon_end - window_start).days)

        # One day of padding each side covers timezone offsets
        range_start = datetime.combine(window_start - timedelta(days=1), time.min)
        range_end = datetime.combine(window_start + timedelta(days=window_days + 1), time.min)
        booked = [
            BookedInterval(s.start_time, s.end_time)
            for s in self.session_repository.find_tutor_sessions_between(
                tutor_id,
                as_utc(zone.localize(range_start)),
                as_utc(zone.localize(range_end)),
            )
        ]

        return resolve_slots(
            weekly,
            booked,
            window_start,
            window_days,
            duration_minutes,
            today=today,
            tz=zone,
        )

    def is_within_availability(self, tutor_id: str, start: datetime, end: datetime) -> bool:
        weekly = self.get_weekly_ranges(tutor_id)
        return fits_availability(weekly, start, end, self.tutor_timezone(tutor_id))

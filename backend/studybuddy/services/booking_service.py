# backend/studybuddy/services/booking_service.py
"""
Booking Intent Builder.

Validates a requested slot, persists the session in ``pending`` status and
authorizes payment for it. Every presentation flow (wizard, calendar, direct
API) books through ``create_booking``.
"""

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from decimal import Decimal
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import SessionPaymentStatus, SessionStatus, SessionType
from ..core.exceptions import (
    BookingConflictException,
    ForbiddenException,
    LeadTimeViolationException,
    NotFoundException,
    PaymentAuthorizationFailedException,
    ValidationException,
    WeeklySessionLimitException,
)
from ..core.money import Money, round_half_up
from ..models.tutor import TutorProfile
from ..models.tutoring_session import TutoringSession
from ..repositories.factory import RepositoryFactory
from ..utils.time import as_utc, hours_between, utcnow
from .availability_resolver import get_timezone
from .availability_service import AvailabilityService
from .base import BaseService
from .notification_service import SESSION_BOOKED, NotificationService
from .payment_gateway import AuthorizationResult, PaymentAuthorizationGateway

logger = logging.getLogger(__name__)


@dataclass
class BookingResult:
    session: TutoringSession
    authorization: AuthorizationResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session.to_dict(),
            "authorization": self.authorization.to_dict(),
        }


def session_price(hourly_rate_cents: int, duration_minutes: int) -> int:
    """Hourly rate prorated to the session length, rounded half-up to the cent."""
    return round_half_up(Decimal(hourly_rate_cents) * Decimal(duration_minutes) / Decimal(60))


class BookingService(BaseService):
    """Creates sessions and their payment authorizations."""

    def __init__(
        self,
        db: Session,
        payment_gateway: Optional[PaymentAuthorizationGateway] = None,
        notification_service: Optional[NotificationService] = None,
        availability_service: Optional[AvailabilityService] = None,
    ):
        super().__init__(db)
        self.payment_gateway = payment_gateway or PaymentAuthorizationGateway(db)
        self.notification_service = notification_service or NotificationService()
        self.availability_service = availability_service or AvailabilityService(db)
        self.session_repository = RepositoryFactory.create_session_repository(db)
        self.tutor_repository = RepositoryFactory.create_tutor_profile_repository(db)

    @BaseService.measure_operation("create_booking")
    def create_booking(
        self,
        student_id: str,
        tutor_id: str,
        start_time: datetime,
        end_time: datetime,
        course_id: Optional[str] = None,
        notes: Optional[str] = None,
        session_type: str = SessionType.VIRTUAL.value,
        location: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BookingResult:
        """
        Book a session and authorize its payment.

        Raises:
            ValidationException: self-booking, bad range/duration, lead time, outside availability
            NotFoundException: tutor profile missing
            BookingConflictException: overlaps another session of the tutor
            WeeklySessionLimitException: tutor's weekly cap reached
            PaymentAuthorizationFailedException: session was created but payment failed
        """
        self.log_operation(
            "create_booking",
            student_id=student_id,
            tutor_id=tutor_id,
            start_time=str(start_time),
        )

        start = as_utc(start_time)
        end = as_utc(end_time)
        now = as_utc(now) if now else utcnow()

        self._validate_request(student_id, tutor_id, start, end, session_type, now)

        profile = self.tutor_repository.get_by_user_id(tutor_id)
        if not profile:
            raise NotFoundException("Tutor not found", details={"tutor_id": tutor_id})

        self._check_availability_and_conflicts(profile, start, end)

        duration_minutes = int((end - start).total_seconds() // 60)
        amount = Money(session_price(profile.hourly_rate_cents, duration_minutes), settings.stripe_currency)

        with self.transaction():
            session = self.session_repository.create(
                tutor_id=tutor_id,
                student_id=student_id,
                course_id=course_id,
                start_time=start,
                end_time=end,
                status=SessionStatus.PENDING.value,
                session_type=session_type,
                location=location,
                notes=notes,
                payment_status=SessionPaymentStatus.UNPAID.value,
            )

        try:
            authorization = self.payment_gateway.authorize(
                session.id,
                amount,
                tutor_id,
                student_id,
                description=f"Tutoring session ({duration_minutes} min)",
            )
        except PaymentAuthorizationFailedException as e:
            self.logger.warning(
                f"Session {session.id} booked but payment authorization failed: {e.message}"
            )
            details = dict(e.details)
            details.update({"session_id": session.id, "retryable": True})
            raise PaymentAuthorizationFailedException(e.message, details=details) from e

        self.session_repository.refresh(session)
        self.notification_service.publish(
            SESSION_BOOKED,
            [tutor_id, student_id],
            {
                "session_id": session.id,
                "start_time": start.isoformat(),
                "end_time": end.isoformat(),
                "amount": amount.cents,
            },
        )
        return BookingResult(session=session, authorization=authorization)

    def _validate_request(
        self,
        student_id: str,
        tutor_id: str,
        start: datetime,
        end: datetime,
        session_type: str,
        now: datetime,
    ) -> None:
        if student_id == tutor_id:
            raise ValidationException("Tutors cannot book sessions with themselves", code="SELF_BOOKING")

        if start >= end:
            raise ValidationException(
                "Session end time must be after the start time", code="INVALID_TIME_RANGE"
            )

        if session_type not in {t.value for t in SessionType}:
            raise ValidationException(
                f"Unknown session type: {session_type}", code="INVALID_SESSION_TYPE"
            )

        duration_minutes = (end - start).total_seconds() / 60
        if (
            duration_minutes not in settings.allowed_session_durations
            or duration_minutes < settings.min_session_minutes
            or duration_minutes > settings.max_session_minutes
        ):
            raise ValidationException(
                f"Session duration must be one of {settings.allowed_session_durations} minutes",
                code="INVALID_DURATION",
                details={"duration_minutes": duration_minutes},
            )

        lead_hours = hours_between(now, start)
        if lead_hours < settings.booking_lead_time_hours:
            raise LeadTimeViolationException(settings.booking_lead_time_hours, lead_hours)

        if start > now + timedelta(days=settings.availability_horizon_days):
            raise ValidationException(
                f"Sessions can be booked at most {settings.availability_horizon_days} days ahead",
                code="BEYOND_BOOKING_HORIZON",
            )

    def _check_availability_and_conflicts(
        self, profile: TutorProfile, start: datetime, end: datetime
    ) -> None:
        tutor_id = profile.user_id

        if settings.enforce_availability and not self.availability_service.is_within_availability(
            tutor_id, start, end
        ):
            raise ValidationException(
                "Requested time is outside the tutor's availability",
                code="OUTSIDE_AVAILABILITY",
                details={"start_time": start.isoformat(), "end_time": end.isoformat()},
            )

        conflicts = self.session_repository.find_tutor_sessions_between(tutor_id, start, end)
        if conflicts:
            raise BookingConflictException(
                details={
                    "tutor_id": tutor_id,
                    "conflicting_session_ids": [s.id for s in conflicts],
                }
            )

        if profile.max_weekly_sessions:
            week_start, week_end = self._week_bounds(start, profile.timezone)
            booked = self.session_repository.count_tutor_sessions_between(
                tutor_id, week_start, week_end
            )
            if booked >= profile.max_weekly_sessions:
                raise WeeklySessionLimitException(profile.max_weekly_sessions, booked)

    @staticmethod
    def _week_bounds(start: datetime, tz_name: Optional[str]) -> tuple[datetime, datetime]:
        """Monday-to-Monday week containing ``start`` in the tutor's timezone, as UTC."""
        zone = get_timezone(tz_name)
        local_day = start.astimezone(zone).date()
        monday = local_day - timedelta(days=local_day.weekday())
        week_start = zone.localize(datetime.combine(monday, time.min))
        week_end = zone.localize(datetime.combine(monday + timedelta(days=7), time.min))
        return as_utc(week_start), as_utc(week_end)

    def get_session(
        self, session_id: str, caller_id: str, allow_admin: bool = False
    ) -> TutoringSession:
        """Return a session visible to one of its participants (or an admin)."""
        session = self.session_repository.get_by_id(session_id)
        if not session:
            raise NotFoundException("Session not found", details={"session_id": session_id})
        if not allow_admin and session.role_of(caller_id) is None:
            raise ForbiddenException(
                "Only the session's tutor or student can view it",
                code="UNAUTHORIZED",
                details={"session_id": session_id},
            )
        return session

    @BaseService.measure_operation("authorize_session")
    def authorize_session(
        self,
        session_id: str,
        caller_id: str,
        description: Optional[str] = None,
    ) -> AuthorizationResult:
        """
        (Re-)authorize payment for an existing session on behalf of its student.

        Used after a failed authorization at booking time. The amount is always
        the session price at the tutor's current rate.
        """
        session = self.session_repository.get_by_id(session_id)
        if not session:
            raise NotFoundException("Session not found", details={"session_id": session_id})
        if caller_id != session.student_id:
            raise ForbiddenException(
                "Only the session's student can authorize its payment",
                code="UNAUTHORIZED",
                details={"session_id": session_id},
            )

        profile = self.tutor_repository.get_by_user_id(session.tutor_id)
        if not profile:
            raise NotFoundException("Tutor not found", details={"tutor_id": session.tutor_id})
        amount = Money(
            session_price(profile.hourly_rate_cents, session.duration_minutes),
            settings.stripe_currency,
        )

        return self.payment_gateway.authorize(
            session.id,
            amount,
            session.tutor_id,
            session.student_id,
            description=description or f"Tutoring session ({session.duration_minutes} min)",
        )

"""
Tests for BookingService: request validation, availability, conflicts and
the hand-off to the payment gateway.
"""

from datetime import datetime, time, timedelta, timezone

import pytest

from conftest import new_id
from studybuddy.core.enums import SessionPaymentStatus, SessionStatus
from studybuddy.core.exceptions import (
    BookingConflictException,
    ForbiddenException,
    LeadTimeViolationException,
    NotFoundException,
    PaymentAuthorizationFailedException,
    PaymentProcessorException,
    ValidationException,
    WeeklySessionLimitException,
)
from studybuddy.core.money import Money
from studybuddy.models.tutoring_session import TutoringSession
from studybuddy.services.availability_service import AvailabilityService
from studybuddy.services.booking_service import BookingService, session_price
from studybuddy.services.notification_service import DELIVER_TASK, SESSION_BOOKED
from studybuddy.services.payment_gateway import PaymentAuthorizationGateway

# Monday 08:00 UTC
NOW = datetime(2030, 1, 7, 8, 0, tzinfo=timezone.utc)


def at(hour, minute=0, days=0):
    return NOW.replace(hour=hour, minute=minute) + timedelta(days=days)


@pytest.fixture
def booking_service(db, stripe_mock, fast_retry, notifier):
    gateway = PaymentAuthorizationGateway(db, stripe_service=stripe_mock, retry_policy=fast_retry)
    return BookingService(
        db,
        payment_gateway=gateway,
        notification_service=notifier,
        availability_service=AvailabilityService(db),
    )


@pytest.fixture
def tutor(make_tutor, add_availability):
    profile = make_tutor(hourly_rate_cents=6000)
    for weekday in range(7):
        add_availability(profile.user_id, weekday, time(9), time(18))
    return profile


def _book(service, tutor, start, minutes=60, student_id=None, **kwargs):
    return service.create_booking(
        student_id=student_id or new_id(),
        tutor_id=tutor.user_id,
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        now=kwargs.pop("now", NOW),
        **kwargs,
    )


class TestSessionPrice:
    """Hourly rate prorated by duration."""

    def test_prorates(self):
        assert session_price(6000, 60) == 6000
        assert session_price(6000, 90) == 9000
        assert session_price(4999, 30) == 2500


class TestCreateBooking:
    """Happy path and side effects."""

    def test_books_and_authorizes(self, db, booking_service, tutor, stripe_mock):
        result = _book(booking_service, tutor, at(14))

        session = result.session
        assert session.status == SessionStatus.PENDING.value
        assert session.payment_status == SessionPaymentStatus.PENDING.value
        assert result.authorization.amount == 6000
        assert stripe_mock.create_payment_intent.call_args.kwargs["amount"] == Money(6000)
        assert db.query(TutoringSession).count() == 1

    def test_publishes_booked_notification(self, booking_service, tutor, enqueue_mock):
        student_id = new_id()
        result = _book(booking_service, tutor, at(14), student_id=student_id)

        enqueue_mock.assert_called_once()
        task_name = enqueue_mock.call_args.args[0]
        event_type, recipients, payload = enqueue_mock.call_args.kwargs["args"]
        assert task_name == DELIVER_TASK
        assert event_type == SESSION_BOOKED
        assert recipients == [tutor.user_id, student_id]
        assert payload["session_id"] == result.session.id
        assert payload["amount"] == 6000

    def test_exactly_three_hours_ahead_is_accepted(self, booking_service, tutor):
        result = _book(booking_service, tutor, at(11))
        assert result.session.id

    def test_two_hours_ahead_violates_lead_time(self, db, booking_service, tutor):
        with pytest.raises(LeadTimeViolationException) as exc_info:
            _book(booking_service, tutor, at(10))

        assert exc_info.value.code == "LEAD_TIME_VIOLATION"
        assert exc_info.value.details["required_hours"] == 3
        assert db.query(TutoringSession).count() == 0

    def test_beyond_horizon(self, booking_service, tutor):
        with pytest.raises(ValidationException) as exc_info:
            _book(booking_service, tutor, at(10, days=29))
        assert exc_info.value.code == "BEYOND_BOOKING_HORIZON"

    def test_naive_datetimes_are_treated_as_utc(self, booking_service, tutor):
        result = _book(booking_service, tutor, at(14).replace(tzinfo=None))
        assert result.session.duration_minutes == 60


class TestBookingValidation:
    """Rejected requests never persist a session."""

    def test_self_booking(self, booking_service, tutor):
        with pytest.raises(ValidationException) as exc_info:
            _book(booking_service, tutor, at(14), student_id=tutor.user_id)
        assert exc_info.value.code == "SELF_BOOKING"

    def test_end_before_start(self, booking_service, tutor):
        with pytest.raises(ValidationException) as exc_info:
            booking_service.create_booking(
                student_id=new_id(),
                tutor_id=tutor.user_id,
                start_time=at(15),
                end_time=at(14),
                now=NOW,
            )
        assert exc_info.value.code == "INVALID_TIME_RANGE"

    def test_duration_not_offered(self, booking_service, tutor):
        with pytest.raises(ValidationException) as exc_info:
            _book(booking_service, tutor, at(14), minutes=45)
        assert exc_info.value.code == "INVALID_DURATION"

    def test_unknown_session_type(self, booking_service, tutor):
        with pytest.raises(ValidationException) as exc_info:
            _book(booking_service, tutor, at(14), session_type="hybrid")
        assert exc_info.value.code == "INVALID_SESSION_TYPE"

    def test_unknown_tutor(self, booking_service):
        with pytest.raises(NotFoundException):
            booking_service.create_booking(
                student_id=new_id(),
                tutor_id=new_id(),
                start_time=at(14),
                end_time=at(15),
                now=NOW,
            )

    def test_outside_availability(self, booking_service, tutor):
        with pytest.raises(ValidationException) as exc_info:
            _book(booking_service, tutor, at(17, 30))
        assert exc_info.value.code == "OUTSIDE_AVAILABILITY"


class TestConflictsAndLimits:
    """Overlaps and weekly caps."""

    def test_overlapping_session_conflicts(self, booking_service, tutor, make_session):
        existing = make_session(tutor.user_id, start_time=at(14))

        with pytest.raises(BookingConflictException) as exc_info:
            _book(booking_service, tutor, at(14, 30))

        assert exc_info.value.details["conflicting_session_ids"] == [existing.id]

    def test_back_to_back_is_not_a_conflict(self, booking_service, tutor, make_session):
        make_session(tutor.user_id, start_time=at(14))
        assert _book(booking_service, tutor, at(15)).session.id

    def test_cancelled_session_frees_slot(self, booking_service, tutor, make_session):
        make_session(tutor.user_id, start_time=at(14), status=SessionStatus.CANCELLED)
        assert _book(booking_service, tutor, at(14)).session.id

    def test_weekly_limit(self, make_tutor, add_availability, make_session, booking_service):
        capped = make_tutor(max_weekly_sessions=1)
        add_availability(capped.user_id, 0, time(9), time(18))
        make_session(capped.user_id, start_time=at(10, days=2))

        with pytest.raises(WeeklySessionLimitException) as exc_info:
            _book(booking_service, capped, at(14))
        assert exc_info.value.details == {"limit": 1, "booked": 1}

    def test_next_week_is_not_counted(self, make_tutor, add_availability, make_session, booking_service):
        capped = make_tutor(max_weekly_sessions=1)
        add_availability(capped.user_id, 0, time(9), time(18))
        make_session(capped.user_id, start_time=at(10, days=7))

        assert _book(booking_service, capped, at(14)).session.id


class TestAuthorizationFailureAtBooking:
    """The session survives a failed authorization so it can be retried."""

    def test_failure_reports_session_id(self, db, booking_service, tutor, stripe_mock, enqueue_mock):
        stripe_mock.create_payment_intent.side_effect = PaymentProcessorException(
            "declined", operation="create_payment_intent"
        )

        with pytest.raises(PaymentAuthorizationFailedException) as exc_info:
            _book(booking_service, tutor, at(14))

        session_id = exc_info.value.details["session_id"]
        assert exc_info.value.details["retryable"] is True
        session = db.get(TutoringSession, session_id)
        assert session.status == SessionStatus.PENDING.value
        assert session.payment_status == SessionPaymentStatus.UNPAID.value
        enqueue_mock.assert_not_called()


class TestSessionAccess:
    """Reading and re-authorizing existing sessions."""

    def test_participants_can_view(self, booking_service, tutor, make_session):
        session = make_session(tutor.user_id)
        assert booking_service.get_session(session.id, tutor.user_id).id == session.id
        assert booking_service.get_session(session.id, session.student_id).id == session.id

    def test_outsider_forbidden(self, booking_service, tutor, make_session):
        session = make_session(tutor.user_id)
        with pytest.raises(ForbiddenException):
            booking_service.get_session(session.id, new_id())

    def test_admin_can_view(self, booking_service, tutor, make_session):
        session = make_session(tutor.user_id)
        assert booking_service.get_session(session.id, new_id(), allow_admin=True).id == session.id

    def test_missing_session(self, booking_service):
        with pytest.raises(NotFoundException):
            booking_service.get_session(new_id(), new_id())

    def test_authorize_session_defaults_to_session_price(self, booking_service, tutor, make_session):
        session = make_session(tutor.user_id, minutes=90)

        result = booking_service.authorize_session(session.id, session.student_id)

        assert result.amount == 9000

    def test_authorize_session_charges_tutor_rate(self, booking_service, tutor, make_session, stripe_mock):
        session = make_session(tutor.user_id)

        result = booking_service.authorize_session(session.id, session.student_id, "Retry")

        assert result.amount == 6000
        kwargs = stripe_mock.create_payment_intent.call_args.kwargs
        assert kwargs["amount"] == Money(6000)
        assert kwargs["description"] == "Retry"

    def test_only_student_can_authorize(self, booking_service, tutor, make_session):
        session = make_session(tutor.user_id)
        with pytest.raises(ForbiddenException):
            booking_service.authorize_session(session.id, tutor.user_id)

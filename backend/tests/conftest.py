# backend/tests/conftest.py
"""
Pytest configuration and shared fixtures.

Tests run against an in-memory SQLite database (one shared connection via
StaticPool) that is created and dropped around every test. Stripe is never
called: services receive a MagicMock processor from ``stripe_mock``.
"""

import os

# CRITICAL: Set testing configuration BEFORE any studybuddy imports!
os.environ["CI"] = "1"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["IS_TESTING"] = "true"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["SECRET_KEY"] = "test-secret-key-with-enough-entropy-0123456789"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["PAYMENT_RETRY_BACKOFF_SECONDS"] = "[0, 0, 0]"
os.environ["DEFAULT_TIMEZONE"] = "UTC"
for _zoom_var in ("ZOOM_ACCOUNT_ID", "ZOOM_CLIENT_ID", "ZOOM_CLIENT_SECRET"):
    os.environ.pop(_zoom_var, None)

from datetime import datetime, time, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Callable, Dict, Iterator, Optional
from unittest.mock import MagicMock

from fastapi.testclient import TestClient
import pytest
from sqlalchemy.orm import Session
import ulid

from studybuddy.api.dependencies.auth import create_access_token
from studybuddy.api.dependencies.database import get_db
from studybuddy.api.dependencies.services import (
    get_notification_service,
    get_stripe_service,
    get_zoom_client,
)
from studybuddy.core.enums import (
    PaymentType,
    SessionPaymentStatus,
    SessionStatus,
    TransactionStatus,
)
from studybuddy.core.exceptions import PaymentProcessorException
from studybuddy.core.retry import RetryPolicy
from studybuddy.database import Base, SessionLocal, engine
from studybuddy.integrations import FakeZoomClient
from studybuddy.main import app
from studybuddy.models.payment import PaymentTransaction
from studybuddy.models.tutor import TutorAvailability, TutorProfile
from studybuddy.models.tutoring_session import TutoringSession
from studybuddy.services.notification_service import NotificationService
from studybuddy.services.stripe_service import StripeService

TUTOR_ACCOUNT = "acct_tutor_123"


def new_id() -> str:
    return str(ulid.ULID())


def next_weekday_at(weekday: int, hour: int, minute: int = 0, min_days_ahead: int = 2) -> datetime:
    """Next UTC datetime on ``weekday`` at least ``min_days_ahead`` days from now."""
    today = datetime.now(timezone.utc).date()
    day = today + timedelta(days=min_days_ahead)
    while day.weekday() != weekday:
        day += timedelta(days=1)
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


@pytest.fixture
def db() -> Iterator[Session]:
    """Fresh schema and session for each test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        Base.metadata.drop_all(bind=engine)


def _intent(intent_id: str, status: str = "requires_payment_method") -> SimpleNamespace:
    return SimpleNamespace(
        id=intent_id,
        client_secret=f"{intent_id}_secret_abc",
        status=status,
        latest_charge=None,
    )


@pytest.fixture
def stripe_mock() -> MagicMock:
    """
    Processor fake with happy-path defaults.

    ``create_payment_intent`` hands out ``pi_test_1``, ``pi_test_2``, ... and
    ``retrieve_payment_intent`` echoes the id with ``intent_status``.
    """
    mock = MagicMock(spec=StripeService)
    counter = {"pi": 0, "tr": 0}
    mock.intent_status = "requires_payment_method"

    def create_payment_intent(**kwargs: Any) -> SimpleNamespace:
        counter["pi"] += 1
        return _intent(f"pi_test_{counter['pi']}")

    def retrieve_payment_intent(intent_id: str) -> SimpleNamespace:
        return _intent(intent_id, mock.intent_status)

    def create_transfer(**kwargs: Any) -> SimpleNamespace:
        counter["tr"] += 1
        return SimpleNamespace(id=f"tr_test_{counter['tr']}", destination=kwargs["destination"])

    def retrieve_transfer(transfer_id: str) -> SimpleNamespace:
        return SimpleNamespace(id=transfer_id, destination=TUTOR_ACCOUNT, reversed=False)

    mock.create_payment_intent.side_effect = create_payment_intent
    mock.retrieve_payment_intent.side_effect = retrieve_payment_intent
    mock.cancel_payment_intent.return_value = SimpleNamespace(status="canceled")
    mock.create_transfer.side_effect = create_transfer
    mock.retrieve_transfer.side_effect = retrieve_transfer
    mock.create_refund.return_value = SimpleNamespace(id="re_test_1", status="succeeded")
    mock.is_account_onboarded.return_value = False
    return mock


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Payment retry policy that never sleeps."""
    return RetryPolicy(
        max_attempts=3,
        backoff_seconds=(0.0,),
        retry_if=lambda exc: isinstance(exc, PaymentProcessorException) and exc.transient,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def enqueue_mock() -> MagicMock:
    return MagicMock()


@pytest.fixture
def notifier(enqueue_mock: MagicMock) -> NotificationService:
    return NotificationService(enqueue=enqueue_mock)


@pytest.fixture
def zoom_client() -> FakeZoomClient:
    return FakeZoomClient()


@pytest.fixture
def make_tutor(db: Session) -> Callable[..., TutorProfile]:
    def _make(
        user_id: Optional[str] = None,
        hourly_rate_cents: int = 6000,
        stripe_account_id: Optional[str] = None,
        onboarding_complete: bool = False,
        timezone_name: str = "UTC",
        max_weekly_sessions: Optional[int] = None,
    ) -> TutorProfile:
        profile = TutorProfile(
            user_id=user_id or new_id(),
            hourly_rate_cents=hourly_rate_cents,
            stripe_account_id=stripe_account_id,
            onboarding_complete=onboarding_complete,
            timezone=timezone_name,
            max_weekly_sessions=max_weekly_sessions,
        )
        db.add(profile)
        db.commit()
        return profile

    return _make


@pytest.fixture
def add_availability(db: Session) -> Callable[..., TutorAvailability]:
    def _add(tutor_id: str, weekday: int, start: time, end: time) -> TutorAvailability:
        row = TutorAvailability(tutor_id=tutor_id, weekday=weekday, start_time=start, end_time=end)
        db.add(row)
        db.commit()
        return row

    return _add


@pytest.fixture
def make_session(db: Session) -> Callable[..., TutoringSession]:
    def _make(
        tutor_id: str,
        student_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        minutes: int = 60,
        status: SessionStatus = SessionStatus.PENDING,
        **fields: Any,
    ) -> TutoringSession:
        start = start_time or next_weekday_at(0, 10)
        session = TutoringSession(
            tutor_id=tutor_id,
            student_id=student_id or new_id(),
            start_time=start,
            end_time=start + timedelta(minutes=minutes),
            status=status.value,
            **fields,
        )
        db.add(session)
        db.commit()
        return session

    return _make


@pytest.fixture
def make_transaction(db: Session) -> Callable[..., PaymentTransaction]:
    def _make(
        session: TutoringSession,
        amount: int = 10000,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        payment_type: PaymentType = PaymentType.TWO_STAGE,
        intent_id: Optional[str] = None,
        **fields: Any,
    ) -> PaymentTransaction:
        transaction = PaymentTransaction(
            session_id=session.id,
            student_id=session.student_id,
            tutor_id=session.tutor_id,
            amount=amount,
            currency="usd",
            status=status.value,
            stripe_payment_intent_id=intent_id or f"pi_{new_id()}",
            platform_fee=fields.pop("platform_fee", 0),
            payment_type=payment_type.value,
            requires_transfer=payment_type == PaymentType.TWO_STAGE,
            **fields,
        )
        db.add(transaction)
        if status == TransactionStatus.COMPLETED:
            session.payment_status = SessionPaymentStatus.PAID.value
        db.commit()
        return transaction

    return _make


def auth_headers(user_id: str, roles: Optional[list[str]] = None) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, roles)}"}


@pytest.fixture
def headers_for() -> Callable[..., Dict[str, str]]:
    return auth_headers


@pytest.fixture
def client(
    db: Session,
    stripe_mock: MagicMock,
    notifier: NotificationService,
    zoom_client: FakeZoomClient,
) -> Iterator[TestClient]:
    """Create a test client bound to the test database and processor fake."""

    def override_get_db() -> Iterator[Session]:
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_service] = lambda: stripe_mock
    app.dependency_overrides[get_notification_service] = lambda: notifier
    app.dependency_overrides[get_zoom_client] = lambda: zoom_client

    test_client = TestClient(app)
    yield test_client

    app.dependency_overrides.clear()
    test_client.close()

"""
Tests for the Cancellation & Refund Resolver.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from conftest import new_id
from studybuddy.core.enums import (
    PaymentType,
    SessionPaymentStatus,
    SessionStatus,
    TransactionStatus,
    TransferStatus,
)
from studybuddy.core.exceptions import (
    ConflictException,
    ForbiddenException,
    PaymentProcessorException,
    ServiceException,
)
from studybuddy.integrations import ZoomClientError
from studybuddy.models.payment import PaymentTransaction, PendingTransfer
from studybuddy.repositories.factory import RepositoryFactory
from studybuddy.services.cancellation_service import CancellationService
from studybuddy.services.notification_service import SESSION_CANCELLED
from studybuddy.services.settlement_service import SettlementService
from studybuddy.services.stripe_webhook_service import StripeWebhookService

START = datetime(2030, 1, 7, 15, 0, tzinfo=timezone.utc)


def hours_ahead(hours):
    return START - timedelta(hours=hours)


@pytest.fixture
def cancellation_service(db, stripe_mock, fast_retry, notifier, zoom_client):
    settlement = SettlementService(db, stripe_service=stripe_mock, retry_policy=fast_retry)
    return CancellationService(
        db,
        stripe_service=stripe_mock,
        settlement_service=settlement,
        notification_service=notifier,
        zoom_client=zoom_client,
        retry_policy=fast_retry,
    )


@pytest.fixture
def paid_session(db, make_tutor, make_session, make_transaction):
    """A session paid through the two-stage path with its unsettled payout placeholder."""
    tutor = make_tutor()
    session = make_session(tutor.user_id, start_time=START)
    transaction = make_transaction(session, amount=10000)
    db.add(
        PendingTransfer(
            session_id=session.id,
            tutor_id=session.tutor_id,
            student_id=session.student_id,
            payment_transaction_id=transaction.id,
            gross_amount=10000,
            amount=8500,
            platform_fee=1500,
        )
    )
    db.commit()
    return session


class TestRefundPolicyApplication:
    """Refund and payout follow the notice the canceller gave."""

    def test_student_full_refund_with_24h_notice(self, db, cancellation_service, stripe_mock, paid_session):
        result = cancellation_service.cancel(
            paid_session.id, paid_session.student_id, "schedule change", now=hours_ahead(30)
        )

        assert result.refund_status == "succeeded"
        assert result.refund_amount == 10000
        assert result.tutor_payout == 0
        assert result.refund_id == "re_test_1"
        assert result.hours_before_session == 30
        assert result.session.status == SessionStatus.CANCELLED.value
        assert result.session.payment_status == SessionPaymentStatus.REFUNDED.value
        assert result.session.cancellation_reason == "schedule change"

        kwargs = stripe_mock.create_refund.call_args.kwargs
        assert kwargs["amount_cents"] == 10000
        assert kwargs["idempotency_key"] == f"refund-{paid_session.id}"
        assert kwargs["reverse_transfer"] is False
        # nothing owed to the tutor, so the placeholder goes away
        assert db.query(PendingTransfer).count() == 0

    def test_student_half_refund_settles_tutor_share(self, db, cancellation_service, paid_session):
        result = cancellation_service.cancel(
            paid_session.id, paid_session.student_id, now=hours_ahead(10)
        )

        assert result.refund_amount == 5000
        assert result.tutor_payout == 5000
        assert result.session.payment_status == SessionPaymentStatus.PARTIALLY_REFUNDED.value

        row = db.query(PendingTransfer).filter_by(session_id=paid_session.id).one()
        db.refresh(row)
        assert row.settled_at is not None
        assert row.gross_amount == 5000
        assert row.amount == 4075
        assert row.status == TransferStatus.PENDING.value

    def test_student_late_cancel_pays_tutor_in_full(self, db, cancellation_service, stripe_mock, paid_session):
        result = cancellation_service.cancel(
            paid_session.id, paid_session.student_id, now=hours_ahead(1)
        )

        assert result.refund_status == "not_required"
        assert result.refund_amount == 0
        assert result.tutor_payout == 10000
        stripe_mock.create_refund.assert_not_called()
        row = db.query(PendingTransfer).filter_by(session_id=paid_session.id).one()
        db.refresh(row)
        assert row.amount == 8180

    def test_tutor_cancel_always_refunds(self, cancellation_service, paid_session):
        result = cancellation_service.cancel(
            paid_session.id, paid_session.tutor_id, now=hours_ahead(1)
        )

        assert result.refund_amount == 10000
        assert result.tutor_payout == 0
        assert "Tutor cancelled" in result.policy_basis

    def test_direct_payment_refund_reverses_transfer(
        self, cancellation_service, stripe_mock, make_tutor, make_session, make_transaction
    ):
        tutor = make_tutor()
        session = make_session(tutor.user_id, start_time=START)
        make_transaction(session, payment_type=PaymentType.CONNECT_DIRECT)

        cancellation_service.cancel(session.id, session.student_id, now=hours_ahead(48))

        assert stripe_mock.create_refund.call_args.kwargs["reverse_transfer"] is True


class TestRefundFailure:
    """A failed refund is recorded without un-cancelling."""

    def test_refund_failure_is_reported(self, db, cancellation_service, stripe_mock, paid_session):
        stripe_mock.create_refund.side_effect = PaymentProcessorException(
            "charge already refunded", operation="create_refund"
        )

        result = cancellation_service.cancel(
            paid_session.id, paid_session.student_id, now=hours_ahead(30)
        )

        assert result.refund_status == "failed"
        assert result.refund_error == "charge already refunded"
        assert result.session.status == SessionStatus.CANCELLED.value
        assert result.session.payment_status == SessionPaymentStatus.REFUND_FAILED.value
        assert result.session.refund_error == "charge already refunded"


class TestUnpaidCancellation:
    """Sessions without a completed payment."""

    def test_live_authorization_is_voided(self, db, cancellation_service, stripe_mock, make_tutor, make_session, make_transaction):
        tutor = make_tutor()
        session = make_session(tutor.user_id, start_time=START)
        transaction = make_transaction(
            session, status=TransactionStatus.PENDING, intent_id="pi_live_1"
        )

        result = cancellation_service.cancel(session.id, session.student_id, now=hours_ahead(30))

        assert result.refund_status == "not_required"
        stripe_mock.cancel_payment_intent.assert_called_once_with("pi_live_1")
        stored = db.get(PaymentTransaction, transaction.id)
        db.refresh(stored)
        assert stored.status == TransactionStatus.FAILED.value

    def test_void_failure_does_not_block_cancellation(
        self, cancellation_service, stripe_mock, make_tutor, make_session, make_transaction
    ):
        tutor = make_tutor()
        session = make_session(tutor.user_id, start_time=START)
        make_transaction(session, status=TransactionStatus.PENDING)
        stripe_mock.cancel_payment_intent.side_effect = PaymentProcessorException(
            "already canceled", operation="cancel_payment_intent"
        )

        result = cancellation_service.cancel(session.id, session.student_id, now=hours_ahead(30))

        assert result.session.status == SessionStatus.CANCELLED.value

    def test_publishes_cancelled_notification(
        self, cancellation_service, enqueue_mock, make_tutor, make_session
    ):
        tutor = make_tutor()
        session = make_session(tutor.user_id, start_time=START)

        cancellation_service.cancel(session.id, session.tutor_id, now=hours_ahead(30))

        event_type, recipients, payload = enqueue_mock.call_args.kwargs["args"]
        assert event_type == SESSION_CANCELLED
        assert set(recipients) == {session.tutor_id, session.student_id}
        assert payload["cancelled_by"] == "tutor"


class TestMeetingTeardown:
    """Virtual meetings are removed with the session."""

    def test_meeting_deleted(self, cancellation_service, zoom_client, make_tutor, make_session):
        tutor = make_tutor()
        session = make_session(tutor.user_id, start_time=START, meeting_id="zm_123")

        result = cancellation_service.cancel(session.id, session.student_id, now=hours_ahead(30))

        assert result.meeting_teardown == "deleted"
        assert zoom_client.calls == [{"method": "delete_meeting", "meeting_id": "zm_123"}]
        assert result.session.meeting_id is None

    def test_teardown_failure_is_reported(self, cancellation_service, zoom_client, make_tutor, make_session):
        tutor = make_tutor()
        session = make_session(tutor.user_id, start_time=START, meeting_id="zm_456")
        zoom_client.set_error("delete_meeting", ZoomClientError("Zoom down", status_code=503))

        result = cancellation_service.cancel(session.id, session.student_id, now=hours_ahead(30))

        assert result.meeting_teardown == "failed"
        assert result.session.status == SessionStatus.CANCELLED.value
        assert result.session.meeting_id == "zm_456"

    def test_no_meeting(self, cancellation_service, make_tutor, make_session):
        tutor = make_tutor()
        session = make_session(tutor.user_id, start_time=START)

        result = cancellation_service.cancel(session.id, session.student_id, now=hours_ahead(30))

        assert result.meeting_teardown == "not_applicable"


class TestCancellationRejections:
    """Only open sessions can be cancelled, only by participants."""

    def test_already_cancelled(self, cancellation_service, paid_session):
        cancellation_service.cancel(paid_session.id, paid_session.student_id, now=hours_ahead(30))

        with pytest.raises(ConflictException) as exc_info:
            cancellation_service.cancel(paid_session.id, paid_session.student_id, now=hours_ahead(29))
        assert exc_info.value.code == "ALREADY_CANCELLED"

    def test_completed_session(self, cancellation_service, make_tutor, make_session):
        tutor = make_tutor()
        session = make_session(tutor.user_id, start_time=START, status=SessionStatus.COMPLETED)

        with pytest.raises(ConflictException) as exc_info:
            cancellation_service.cancel(session.id, session.student_id, now=hours_ahead(30))
        assert exc_info.value.code == "CANNOT_CANCEL_COMPLETED"

    def test_outsider(self, cancellation_service, paid_session):
        with pytest.raises(ForbiddenException):
            cancellation_service.cancel(paid_session.id, new_id(), now=hours_ahead(30))


class TestPaymentLandingDuringCancellation:
    """Money that succeeds around a cancel is refunded under the policy."""

    @pytest.fixture
    def live_session(self, make_tutor, make_session, make_transaction):
        tutor = make_tutor()
        session = make_session(tutor.user_id, start_time=START)
        transaction = make_transaction(
            session, amount=10000, status=TransactionStatus.PENDING, intent_id="pi_race_1"
        )
        return session, transaction

    def test_intent_succeeded_before_void_is_refunded(
        self, db, cancellation_service, stripe_mock, live_session
    ):
        session, transaction = live_session
        stripe_mock.cancel_payment_intent.side_effect = PaymentProcessorException(
            "intent already succeeded", operation="cancel_payment_intent"
        )
        stripe_mock.intent_status = "succeeded"

        result = cancellation_service.cancel(session.id, session.student_id, now=hours_ahead(30))

        assert result.refund_status == "succeeded"
        assert result.refund_amount == 10000
        assert result.session.payment_status == SessionPaymentStatus.REFUNDED.value
        kwargs = stripe_mock.create_refund.call_args.kwargs
        assert kwargs["payment_intent_id"] == "pi_race_1"
        assert kwargs["amount_cents"] == 10000
        stored = db.get(PaymentTransaction, transaction.id)
        db.refresh(stored)
        assert stored.status == TransactionStatus.COMPLETED.value

    def test_late_cancel_with_captured_payment_pays_tutor(
        self, db, cancellation_service, stripe_mock, live_session
    ):
        session, _ = live_session
        stripe_mock.cancel_payment_intent.side_effect = PaymentProcessorException(
            "intent already succeeded", operation="cancel_payment_intent"
        )
        stripe_mock.intent_status = "succeeded"

        result = cancellation_service.cancel(session.id, session.student_id, now=hours_ahead(1))

        assert result.refund_status == "not_required"
        assert result.tutor_payout == 10000
        assert result.payout_error is None
        assert result.session.payment_status == SessionPaymentStatus.PAID.value
        stripe_mock.create_refund.assert_not_called()
        row = db.query(PendingTransfer).filter_by(session_id=session.id).one()
        db.refresh(row)
        assert row.amount == 8180
        assert row.settled_at is not None

    def test_success_webhook_after_cancel_refunds_once(
        self, db, cancellation_service, stripe_mock, live_session
    ):
        session, transaction = live_session
        stripe_mock.cancel_payment_intent.side_effect = PaymentProcessorException(
            "processor timeout", operation="cancel_payment_intent"
        )

        result = cancellation_service.cancel(session.id, session.student_id, now=hours_ahead(48))
        assert result.refund_status == "not_required"
        stored = db.get(PaymentTransaction, transaction.id)
        db.refresh(stored)
        assert stored.status == TransactionStatus.FAILED.value

        webhook = StripeWebhookService(
            db,
            stripe_service=stripe_mock,
            settlement_service=cancellation_service.settlement_service,
            cancellation_service=cancellation_service,
        )
        event = {
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_race_1", "latest_charge": "ch_race_1"}},
        }

        outcome = webhook.handle_event(event)

        assert outcome["session_cancelled"] is True
        assert outcome["refund_status"] == "succeeded"
        assert outcome["refund_amount"] == 10000
        db.refresh(stored)
        assert stored.status == TransactionStatus.COMPLETED.value
        assert stored.stripe_charge_id == "ch_race_1"
        refreshed = cancellation_service.session_repository.get_by_id(session.id)
        assert refreshed.status == SessionStatus.CANCELLED.value
        assert refreshed.payment_status == SessionPaymentStatus.REFUNDED.value

        redelivered = webhook.handle_event(event)

        assert redelivered["refund_status"] == "already_refunded"
        assert stripe_mock.create_refund.call_count == 1

    def test_failed_row_not_completed_by_default(self, db, live_session):
        _, transaction = live_session
        payments = RepositoryFactory.create_payment_repository(db)
        payments.mark_failed(transaction.id, reason="session_cancelled")
        db.commit()

        assert payments.mark_completed(transaction.id, charge_id="ch_late") is False
        assert payments.mark_completed(transaction.id, charge_id="ch_late", allow_failed=True) is True


class TestPayoutFailureAfterRefund:
    """A payout error is reported beside a refund that already happened."""

    def test_payout_error_reported(self, cancellation_service, stripe_mock, paid_session, monkeypatch):
        monkeypatch.setattr(
            cancellation_service.settlement_service,
            "settle_cancellation_payout",
            MagicMock(side_effect=ServiceException("Database operation failed: locked")),
        )

        result = cancellation_service.cancel(
            paid_session.id, paid_session.student_id, now=hours_ahead(10)
        )

        assert result.refund_status == "succeeded"
        assert result.refund_amount == 5000
        assert result.payout_error == "Database operation failed: locked"
        assert result.to_dict()["payout_error"] == "Database operation failed: locked"
        assert result.session.status == SessionStatus.CANCELLED.value
        stripe_mock.create_refund.assert_called_once()

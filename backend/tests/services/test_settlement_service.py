"""
Tests for the Settlement Engine: exactly-once settlement and transfer execution.
"""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from conftest import TUTOR_ACCOUNT
from studybuddy.core.enums import PaymentType, SessionStatus, TransactionStatus, TransferStatus
from studybuddy.core.exceptions import (
    ConflictException,
    PaymentProcessorException,
    TutorPayoutNotReadyException,
)
from studybuddy.core.money import Money
from studybuddy.models.payment import PaymentTransaction, PendingTransfer
from studybuddy.services.payment_gateway import PaymentAuthorizationGateway
from studybuddy.services.settlement_service import SettlementService


@pytest.fixture
def settlement_service(db, stripe_mock, fast_retry):
    return SettlementService(db, stripe_service=stripe_mock, retry_policy=fast_retry)


@pytest.fixture
def completed_session(make_session):
    def _make(tutor_id):
        return make_session(
            tutor_id,
            status=SessionStatus.COMPLETED,
            tutor_confirmed=True,
            student_confirmed=True,
            completion_date=datetime.now(timezone.utc),
        )

    return _make


class TestSettle:
    """Each completed session settles exactly once."""

    def test_settles_with_fee_breakdown(self, db, settlement_service, make_tutor, completed_session, make_transaction):
        tutor = make_tutor()
        session = completed_session(tutor.user_id)
        make_transaction(session, amount=10000)

        result = settlement_service.settle(session.id)

        assert result.status == "settled"
        assert (result.tutor_amount, result.platform_fee, result.processor_fee) == (8180, 1500, 320)
        row = db.query(PendingTransfer).filter_by(session_id=session.id).one()
        assert row.status == TransferStatus.PENDING.value
        assert row.settled_at is not None
        assert row.gross_amount == 10000

    def test_second_settle_is_a_no_op(self, db, settlement_service, make_tutor, completed_session, make_transaction):
        tutor = make_tutor()
        session = completed_session(tutor.user_id)
        make_transaction(session)

        first = settlement_service.settle(session.id)
        second = settlement_service.settle(session.id)

        assert second.status == "already_settled"
        assert second.pending_transfer_id == first.pending_transfer_id
        assert second.tutor_amount == 8180
        assert db.query(PendingTransfer).count() == 1

    def test_deferred_until_payment_completes(self, db, settlement_service, make_tutor, completed_session, make_transaction):
        tutor = make_tutor()
        session = completed_session(tutor.user_id)
        make_transaction(session, status=TransactionStatus.PENDING)

        result = settlement_service.settle(session.id)

        assert result.status == "deferred"
        assert result.reason == "payment_not_completed"
        assert db.query(PendingTransfer).count() == 0

    def test_open_session_cannot_settle(self, settlement_service, make_tutor, make_session):
        tutor = make_tutor()
        session = make_session(tutor.user_id)

        with pytest.raises(ConflictException) as exc_info:
            settlement_service.settle(session.id)
        assert exc_info.value.code == "SESSION_NOT_COMPLETED"

    def test_direct_payment_recorded_as_completed(
        self, db, settlement_service, make_tutor, completed_session, make_transaction
    ):
        tutor = make_tutor(stripe_account_id=TUTOR_ACCOUNT, onboarding_complete=True)
        session = completed_session(tutor.user_id)
        make_transaction(session, payment_type=PaymentType.CONNECT_DIRECT)

        result = settlement_service.settle(session.id)

        assert result.status == "settled"
        row = db.query(PendingTransfer).filter_by(session_id=session.id).one()
        assert row.status == TransferStatus.COMPLETED.value
        assert row.processed_by == "destination_charge"

    def test_settles_authorization_placeholder(
        self, db, stripe_mock, fast_retry, settlement_service, make_tutor, make_session
    ):
        tutor = make_tutor()
        session = make_session(tutor.user_id)
        gateway = PaymentAuthorizationGateway(db, stripe_service=stripe_mock, retry_policy=fast_retry)
        authorization = gateway.authorize(
            session.id, Money(10000), session.tutor_id, session.student_id
        )
        placeholder = db.query(PendingTransfer).filter_by(session_id=session.id).one()
        assert placeholder.settled_at is None

        transaction = db.get(PaymentTransaction, authorization.transaction_id)
        transaction.status = TransactionStatus.COMPLETED.value
        session.status = SessionStatus.COMPLETED.value
        db.commit()

        result = settlement_service.settle(session.id)

        assert result.status == "settled"
        assert result.pending_transfer_id == placeholder.id
        db.refresh(placeholder)
        assert placeholder.amount == 8180
        assert placeholder.settled_at is not None
        assert db.query(PendingTransfer).count() == 1

    def test_retry_deferred(self, settlement_service, make_tutor, completed_session, make_transaction):
        tutor = make_tutor()
        paid = completed_session(tutor.user_id)
        make_transaction(paid)
        completed_session(tutor.user_id)

        counts = settlement_service.retry_deferred()

        assert counts["settled"] == 1
        assert counts["deferred"] == 1
        assert counts["errors"] == 0


def stale_first_lookup(monkeypatch, repository, stale):
    """Make the first transfer lookup return ``stale``, as a worker that read before a rival wrote."""
    real = repository.get_by_session_id
    calls = []

    def lookup(session_id):
        calls.append(session_id)
        return stale if len(calls) == 1 else real(session_id)

    monkeypatch.setattr(repository, "get_by_session_id", lookup)
    return calls


class TestConcurrentSettle:
    """A settle that loses the race reports the winner's row."""

    def test_unique_violation_on_insert(
        self, db, monkeypatch, settlement_service, make_tutor, completed_session, make_transaction
    ):
        tutor = make_tutor()
        session = completed_session(tutor.user_id)
        make_transaction(session, amount=10000)
        winner = SettlementService(db, stripe_service=settlement_service.stripe_service)
        first = winner.settle(session.id)
        calls = stale_first_lookup(monkeypatch, settlement_service.transfer_repository, None)

        result = settlement_service.settle(session.id)

        assert len(calls) == 2
        assert result.status == "already_settled"
        assert result.pending_transfer_id == first.pending_transfer_id
        assert result.tutor_amount == 8180
        assert db.query(PendingTransfer).count() == 1

    def test_placeholder_settled_by_another_worker(
        self, db, monkeypatch, settlement_service, make_tutor, completed_session, make_transaction
    ):
        tutor = make_tutor()
        session = completed_session(tutor.user_id)
        transaction = make_transaction(session, amount=10000)
        placeholder = PendingTransfer(
            session_id=session.id,
            tutor_id=session.tutor_id,
            student_id=session.student_id,
            payment_transaction_id=transaction.id,
            gross_amount=10000,
            amount=8500,
            platform_fee=1500,
        )
        db.add(placeholder)
        db.commit()
        placeholder_id = placeholder.id
        first = settlement_service.settle(session.id)
        assert first.status == "settled"
        stale = SimpleNamespace(id=placeholder_id, is_settled=False)
        stale_first_lookup(monkeypatch, settlement_service.transfer_repository, stale)

        result = settlement_service.settle(session.id)

        assert result.status == "already_settled"
        assert result.pending_transfer_id == placeholder_id
        assert result.tutor_amount == 8180
        assert db.query(PendingTransfer).count() == 1


@pytest.fixture
def settled_row(settlement_service, make_tutor, completed_session, make_transaction):
    """A tutor with an onboarded account and one settled, unpaid obligation."""
    tutor = make_tutor(stripe_account_id=TUTOR_ACCOUNT, onboarding_complete=True)
    session = completed_session(tutor.user_id)
    make_transaction(session, stripe_charge_id="ch_test_1")
    result = settlement_service.settle(session.id)
    return tutor, result.pending_transfer_id


class TestExecuteTransfers:
    """Moving settled obligations to the tutor's account."""

    def test_transfers_and_verifies(self, db, settlement_service, stripe_mock, settled_row):
        tutor, row_id = settled_row

        result = settlement_service.execute_transfers(tutor.user_id, processed_by="admin-1")

        assert result.completed == [row_id]
        assert result.attempted == 1
        kwargs = stripe_mock.create_transfer.call_args.kwargs
        assert kwargs["amount_cents"] == 8180
        assert kwargs["destination"] == TUTOR_ACCOUNT
        assert kwargs["idempotency_key"] == f"transfer-{row_id}"
        assert kwargs["source_transaction"] == "ch_test_1"

        row = db.get(PendingTransfer, row_id)
        db.refresh(row)
        assert row.status == TransferStatus.COMPLETED.value
        assert row.stripe_transfer_id == "tr_test_1"
        assert row.processed_by == "admin-1"

    def test_completed_rows_are_not_transferred_twice(self, settlement_service, stripe_mock, settled_row):
        tutor, _ = settled_row

        settlement_service.execute_transfers(tutor.user_id)
        second = settlement_service.execute_transfers(tutor.user_id)

        assert second.attempted == 0
        assert stripe_mock.create_transfer.call_count == 1

    def test_transient_failure_stays_pending_then_recovers(
        self, db, settlement_service, stripe_mock, settled_row
    ):
        tutor, row_id = settled_row
        default_side_effect = stripe_mock.create_transfer.side_effect
        stripe_mock.create_transfer.side_effect = PaymentProcessorException(
            "timeout", operation="create_transfer", transient=True
        )

        first = settlement_service.execute_transfers(tutor.user_id)

        assert first.completed == []
        assert [entry["pending_transfer_id"] for entry in first.retry_pending] == [row_id]
        row = db.get(PendingTransfer, row_id)
        db.refresh(row)
        assert row.status == TransferStatus.PENDING.value
        assert row.attempt_count == 1
        assert row.error_message == "timeout"

        stripe_mock.create_transfer.side_effect = default_side_effect
        second = settlement_service.execute_transfers(tutor.user_id)

        assert second.completed == [row_id]
        db.refresh(row)
        assert row.status == TransferStatus.COMPLETED.value
        assert row.error_message is None

    def test_permanent_failure_needs_explicit_retry(self, db, settlement_service, stripe_mock, settled_row):
        tutor, row_id = settled_row
        default_side_effect = stripe_mock.create_transfer.side_effect
        stripe_mock.create_transfer.side_effect = PaymentProcessorException(
            "insufficient funds", operation="create_transfer", processor_code="balance_insufficient"
        )

        first = settlement_service.execute_transfers(tutor.user_id)
        assert [entry["pending_transfer_id"] for entry in first.failed] == [row_id]

        stripe_mock.create_transfer.side_effect = default_side_effect
        assert settlement_service.execute_transfers(tutor.user_id).attempted == 0
        assert settlement_service.execute_transfers(tutor.user_id, retry_failed=True).completed == [row_id]

    def test_reversed_transfer_fails_verification(self, db, settlement_service, stripe_mock, settled_row):
        tutor, row_id = settled_row
        stripe_mock.retrieve_transfer.side_effect = lambda transfer_id: SimpleNamespace(
            id=transfer_id, destination=TUTOR_ACCOUNT, reversed=True
        )

        result = settlement_service.execute_transfers(tutor.user_id)

        assert result.failed[0]["error"] == "Transfer tr_test_1 was reversed"
        row = db.get(PendingTransfer, row_id)
        db.refresh(row)
        assert row.status == TransferStatus.FAILED.value

    def test_tutor_without_account(self, settlement_service, make_tutor):
        tutor = make_tutor()
        with pytest.raises(TutorPayoutNotReadyException) as exc_info:
            settlement_service.execute_transfers(tutor.user_id)
        assert exc_info.value.code == "TUTOR_PAYOUT_NOT_READY"

    def test_tutor_not_onboarded(self, settlement_service, make_tutor):
        tutor = make_tutor(stripe_account_id=TUTOR_ACCOUNT, onboarding_complete=False)
        with pytest.raises(TutorPayoutNotReadyException):
            settlement_service.execute_transfers(tutor.user_id)

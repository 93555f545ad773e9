# backend/studybuddy/services/settlement_service.py
"""
Settlement Engine.

``settle`` records the tutor payout obligation for a completed session
exactly once. ``execute_transfers`` moves settled obligations to the tutor's
connected account; it is a separate operation so a processor outage after
settlement never loses the obligation.

Both confirmation and the ``payment_intent.succeeded`` webhook call
``settle``; the conditional placeholder update and the unique session_id on
PendingTransfer make the second caller a no-op.
"""

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.enums import PaymentType, SessionStatus, TransferStatus
from ..core.exceptions import (
    ConflictException,
    NotFoundException,
    PaymentProcessorException,
    TutorPayoutNotReadyException,
)
from ..core.retry import RetryPolicy
from ..models.payment import PaymentTransaction, PendingTransfer
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..utils.time import utcnow
from .base import BaseService
from .fees import FeeBreakdown
from .payment_gateway import default_payment_retry_policy
from .stripe_service import StripeService

logger = logging.getLogger(__name__)

SETTLED = "settled"
ALREADY_SETTLED = "already_settled"
DEFERRED = "deferred"


@dataclass(frozen=True)
class SettlementResult:
    status: str
    tutor_amount: int = 0
    platform_fee: int = 0
    processor_fee: int = 0
    pending_transfer_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "tutor_amount": self.tutor_amount,
            "platform_fee": self.platform_fee,
            "processor_fee": self.processor_fee,
            "pending_transfer_id": self.pending_transfer_id,
            "reason": self.reason,
        }


@dataclass
class TransferBatchResult:
    tutor_id: str
    completed: List[str] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    retry_pending: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.completed) + len(self.failed) + len(self.retry_pending)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tutor_id": self.tutor_id,
            "attempted": self.attempted,
            "completed": self.completed,
            "failed": self.failed,
            "retry_pending": self.retry_pending,
        }


class SettlementService(BaseService):
    """Fee computation, payout ledger and transfer execution."""

    def __init__(
        self,
        db: Session,
        stripe_service: Optional[StripeService] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        super().__init__(db)
        self.stripe_service = stripe_service or StripeService()
        self.retry_policy = retry_policy or default_payment_retry_policy()
        self.session_repository = RepositoryFactory.create_session_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.transfer_repository = RepositoryFactory.create_transfer_repository(db)
        self.tutor_repository = RepositoryFactory.create_tutor_profile_repository(db)

    @BaseService.measure_operation("settle")
    def settle(self, session_id: str) -> SettlementResult:
        """
        Record the payout obligation for a completed session.

        Returns ``already_settled`` when a settled row exists and ``deferred``
        when the payment has not completed yet; neither is an error.
        """
        session = self.session_repository.get_by_id(session_id)
        if not session:
            raise NotFoundException("Session not found", details={"session_id": session_id})
        if session.status != SessionStatus.COMPLETED.value:
            raise ConflictException(
                "Only completed sessions can be settled",
                code="SESSION_NOT_COMPLETED",
                details={"session_id": session_id, "status": session.status},
            )

        existing = self.transfer_repository.get_by_session_id(session_id)
        if existing is not None and existing.is_settled:
            prometheus_metrics.inc_settlement(ALREADY_SETTLED)
            return self._result_from_row(ALREADY_SETTLED, existing)

        transaction = self.payment_repository.get_completed_transaction(session_id)
        if transaction is None:
            # PaymentNotYetCompleted: the webhook settles once the charge succeeds
            self.logger.info(f"Settlement of session {session_id} deferred: payment not completed")
            prometheus_metrics.inc_settlement(DEFERRED)
            return SettlementResult(status=DEFERRED, reason="payment_not_completed")

        fees = FeeBreakdown.compute(transaction.amount)
        return self._record_settlement(session_id, transaction, fees, existing)

    def settle_cancellation_payout(
        self, session_id: str, transaction: PaymentTransaction, payout_cents: int
    ) -> SettlementResult:
        """Settle the tutor's share of a cancelled two-stage payment through the fee model."""
        existing = self.transfer_repository.get_by_session_id(session_id)
        if existing is not None and existing.is_settled:
            return self._result_from_row(ALREADY_SETTLED, existing)
        fees = FeeBreakdown.compute(payout_cents)
        return self._record_settlement(session_id, transaction, fees, existing)

    def _record_settlement(
        self,
        session_id: str,
        transaction: PaymentTransaction,
        fees: FeeBreakdown,
        placeholder: Optional[PendingTransfer],
    ) -> SettlementResult:
        now = utcnow()
        # Direct charges already paid the tutor at charge time
        direct = transaction.payment_type == PaymentType.CONNECT_DIRECT.value
        values: Dict[str, Any] = {
            "payment_transaction_id": transaction.id,
            "gross_amount": fees.gross_amount,
            "amount": fees.tutor_net,
            "platform_fee": fees.platform_fee,
            "processor_fee": fees.processor_fee,
            "currency": transaction.currency,
            "settled_at": now,
            "status": TransferStatus.COMPLETED.value if direct else TransferStatus.PENDING.value,
        }
        if direct:
            values.update({"processed_at": now, "processed_by": "destination_charge"})

        try:
            with self.transaction():
                if placeholder is not None:
                    if not self.transfer_repository.settle_placeholder(placeholder.id, values):
                        row = self.transfer_repository.get_by_id(placeholder.id)
                        prometheus_metrics.inc_settlement(ALREADY_SETTLED)
                        return self._result_from_row(ALREADY_SETTLED, row)
                    row_id = placeholder.id
                else:
                    row = self.transfer_repository.create(
                        session_id=session_id,
                        tutor_id=transaction.tutor_id,
                        student_id=transaction.student_id,
                        **values,
                    )
                    row_id = row.id
        except IntegrityError:
            # A concurrent settle inserted the row first
            self.db.rollback()
            row = self.transfer_repository.get_by_session_id(session_id)
            self.logger.info(f"Session {session_id} settled concurrently")
            prometheus_metrics.inc_settlement(ALREADY_SETTLED)
            return self._result_from_row(ALREADY_SETTLED, row)

        self.logger.info(
            f"Settled session {session_id}: tutor {fees.tutor_net}, "
            f"platform {fees.platform_fee}, processor {fees.processor_fee}",
            extra={"session_id": session_id, "payment_type": transaction.payment_type},
        )
        prometheus_metrics.inc_settlement(SETTLED)
        return SettlementResult(
            status=SETTLED,
            tutor_amount=fees.tutor_net,
            platform_fee=fees.platform_fee,
            processor_fee=fees.processor_fee,
            pending_transfer_id=row_id,
        )

    @staticmethod
    def _result_from_row(status: str, row: Optional[PendingTransfer]) -> SettlementResult:
        if row is None:
            return SettlementResult(status=status)
        return SettlementResult(
            status=status,
            tutor_amount=row.amount,
            platform_fee=row.platform_fee,
            processor_fee=row.processor_fee,
            pending_transfer_id=row.id,
        )

    @BaseService.measure_operation("execute_transfers")
    def execute_transfers(
        self, tutor_id: str, retry_failed: bool = False, processed_by: str = "system"
    ) -> TransferBatchResult:
        """
        Transfer every settled, pending obligation of a tutor.

        Each row is handled independently: a definitive rejection or a failed
        verification marks it ``failed``; a transport failure leaves it
        ``pending`` with the error noted so the next run picks it up.
        """
        profile = self.tutor_repository.get_by_user_id(tutor_id)
        if profile is None or not profile.stripe_account_id:
            raise TutorPayoutNotReadyException(tutor_id, "no payout account configured")
        if not profile.onboarding_complete:
            raise TutorPayoutNotReadyException(tutor_id, "payout onboarding is not complete")

        result = TransferBatchResult(tutor_id=tutor_id)
        rows = self.transfer_repository.find_executable_for_tutor(
            tutor_id, include_failed=retry_failed
        )
        if not rows:
            return result

        destination = profile.stripe_account_id
        for row in rows:
            self._execute_one(row, destination, processed_by, result)

        self.logger.info(
            f"Transfer run for tutor {tutor_id}: {len(result.completed)} completed, "
            f"{len(result.failed)} failed, {len(result.retry_pending)} pending retry"
        )
        return result

    def _execute_one(
        self,
        row: PendingTransfer,
        destination: str,
        processed_by: str,
        result: TransferBatchResult,
    ) -> None:
        transaction = (
            self.payment_repository.get_by_id(row.payment_transaction_id)
            if row.payment_transaction_id
            else None
        )
        if row.amount <= 0:
            # Nothing to move; close the row in the ledger
            with self.transaction():
                self.transfer_repository.mark_completed(
                    row.id,
                    stripe_transfer_id=None,
                    processed_at=utcnow(),
                    processed_by=processed_by,
                )
            result.completed.append(row.id)
            return

        try:
            transfer = self.retry_policy.call(
                lambda: self.stripe_service.create_transfer(
                    amount_cents=row.amount,
                    currency=row.currency,
                    destination=destination,
                    transfer_group=f"session_{row.session_id}",
                    metadata={
                        "session_id": row.session_id,
                        "pending_transfer_id": row.id,
                        "tutor_id": row.tutor_id,
                    },
                    idempotency_key=f"transfer-{row.id}",
                    source_transaction=transaction.stripe_charge_id if transaction else None,
                ),
                operation="create_transfer",
            )
            verified = self.retry_policy.call(
                lambda: self.stripe_service.retrieve_transfer(transfer.id),
                operation="retrieve_transfer",
            )
        except PaymentProcessorException as e:
            self._record_failure(row, e.message, terminal=not e.transient, result=result)
            return

        problem = self._verification_problem(verified, destination)
        if problem:
            self._record_failure(row, problem, terminal=True, result=result)
            return

        with self.transaction():
            self.transfer_repository.mark_completed(
                row.id,
                stripe_transfer_id=transfer.id,
                processed_at=utcnow(),
                processed_by=processed_by,
            )
            if transaction is not None:
                self.payment_repository.set_transfer_id(transaction.id, transfer.id)
        prometheus_metrics.inc_transfer("completed")
        result.completed.append(row.id)

    @staticmethod
    def _verification_problem(transfer: Any, destination: str) -> Optional[str]:
        if getattr(transfer, "reversed", False):
            return f"Transfer {transfer.id} was reversed"
        if getattr(transfer, "destination", None) != destination:
            return (
                f"Transfer {transfer.id} destination {getattr(transfer, 'destination', None)} "
                f"does not match {destination}"
            )
        return None

    def _record_failure(
        self, row: PendingTransfer, error: str, *, terminal: bool, result: TransferBatchResult
    ) -> None:
        with self.transaction():
            self.transfer_repository.record_failure(row.id, error=error, terminal=terminal)
        entry = {"pending_transfer_id": row.id, "session_id": row.session_id, "error": error}
        if terminal:
            self.logger.error(f"Transfer for session {row.session_id} failed: {error}")
            prometheus_metrics.inc_transfer("failed")
            result.failed.append(entry)
        else:
            self.logger.warning(
                f"Transfer for session {row.session_id} will be retried: {error}"
            )
            prometheus_metrics.inc_transfer("retry_pending")
            result.retry_pending.append(entry)

    def retry_deferred(self, limit: int = 100) -> Dict[str, int]:
        """Re-run settlement for completed sessions without a settled transfer."""
        counts = {SETTLED: 0, ALREADY_SETTLED: 0, DEFERRED: 0, "errors": 0}
        for session in self.session_repository.find_completed_without_settlement(limit):
            try:
                outcome = self.settle(session.id)
            except Exception as e:
                self.logger.error(f"Deferred settlement of {session.id} failed: {str(e)}")
                counts["errors"] += 1
                continue
            counts[outcome.status] += 1
        return counts

# backend/studybuddy/services/cancellation_service.py
"""
Cancellation & Refund Resolver.

The cancellation itself is committed first with a conditional update; the
money side effects (refund, voiding a live authorization, settling the
tutor's share) follow and report their own outcome. A refund failure never
un-cancels the session: it is recorded on the session and returned.
"""

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.enums import PaymentType, SessionPaymentStatus, SessionStatus
from ..core.exceptions import (
    ConflictException,
    ForbiddenException,
    NotFoundException,
    PaymentProcessorException,
    RepositoryException,
    ServiceException,
)
from ..core.retry import RetryPolicy
from ..integrations.zoom_client import FakeZoomClient, ZoomClient, ZoomClientError, build_zoom_client
from ..models.payment import PaymentTransaction
from ..models.tutoring_session import TutoringSession
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..utils.time import as_utc, utcnow
from .base import BaseService
from .notification_service import SESSION_CANCELLED, NotificationService
from .payment_gateway import default_payment_retry_policy
from .refund_policy import RefundDecision, RefundPolicy, hours_before
from .settlement_service import SettlementService
from .stripe_service import StripeService

logger = logging.getLogger(__name__)

REFUND_SUCCEEDED = "succeeded"
REFUND_FAILED = "failed"
REFUND_NOT_REQUIRED = "not_required"


@dataclass
class CancellationResult:
    session: TutoringSession
    refund_amount: int
    tutor_payout: int
    hours_before_session: int
    refund_status: str
    refund_id: Optional[str] = None
    refund_error: Optional[str] = None
    payout_error: Optional[str] = None
    meeting_teardown: str = "not_applicable"
    policy_basis: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session.to_dict(),
            "refund_amount": self.refund_amount,
            "tutor_payout": self.tutor_payout,
            "hours_before_session": self.hours_before_session,
            "refund_status": self.refund_status,
            "refund_id": self.refund_id,
            "refund_error": self.refund_error,
            "payout_error": self.payout_error,
            "meeting_teardown": self.meeting_teardown,
            "policy_basis": self.policy_basis,
        }


class CancellationService(BaseService):
    def __init__(
        self,
        db: Session,
        stripe_service: Optional[StripeService] = None,
        settlement_service: Optional[SettlementService] = None,
        notification_service: Optional[NotificationService] = None,
        zoom_client: Optional[Any] = None,
        retry_policy: Optional[RetryPolicy] = None,
        refund_policy: Optional[RefundPolicy] = None,
    ):
        super().__init__(db)
        self.stripe_service = stripe_service or StripeService()
        self.retry_policy = retry_policy or default_payment_retry_policy()
        self.settlement_service = settlement_service or SettlementService(
            db, stripe_service=self.stripe_service, retry_policy=self.retry_policy
        )
        self.notification_service = notification_service or NotificationService()
        self.zoom_client: ZoomClient | FakeZoomClient = zoom_client or build_zoom_client()
        self.refund_policy = refund_policy or RefundPolicy()
        self.session_repository = RepositoryFactory.create_session_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.transfer_repository = RepositoryFactory.create_transfer_repository(db)

    @BaseService.measure_operation("cancel")
    def cancel(
        self,
        session_id: str,
        cancelled_by_user_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CancellationResult:
        """
        Cancel a session and apply the refund policy.

        Raises:
            NotFoundException: session does not exist
            ForbiddenException: caller is not a participant
            ConflictException: already cancelled or already completed
        """
        now = as_utc(now) if now else utcnow()
        session = self._get_session(session_id)

        role = session.role_of(cancelled_by_user_id)
        if role is None:
            raise ForbiddenException(
                "Only the session's tutor or student can cancel it",
                code="UNAUTHORIZED",
                details={"session_id": session_id},
            )
        self._ensure_cancellable(session)

        hours = hours_before(session.start_time, now)
        transaction = self.payment_repository.get_completed_transaction(session_id)
        paid = transaction.amount if transaction else 0
        decision = self.refund_policy.evaluate(role, hours, paid)

        with self.transaction():
            cancelled = self.session_repository.mark_cancelled(
                session_id,
                cancelled_at=now,
                cancelled_by=cancelled_by_user_id,
                reason=reason,
                hours_before_session=hours,
                refund_amount=decision.refund_amount,
            )
        if not cancelled:
            # Lost a race with another cancel or a completion
            self._ensure_cancellable(self._get_session(session_id))
            raise ConflictException(
                "Session can no longer be cancelled",
                code="ALREADY_CANCELLED",
                details={"session_id": session_id},
            )
        self.logger.info(
            f"Session {session_id} cancelled by {role} {hours}h before start: "
            f"refund {decision.refund_amount}, payout {decision.tutor_payout}"
        )

        captured = self._void_live_authorization(session_id)
        if transaction is None and captured is not None:
            # The payment went through while the cancel was in flight
            transaction = captured
            decision = self._apply_paid_amount(session_id, role, hours, captured)

        refund_status, refund_id, refund_error = self._refund(
            session_id, cancelled_by_user_id, transaction, decision
        )
        payout_error = self._resolve_tutor_share(session_id, transaction, decision)
        teardown = self._teardown_meeting(session_id)

        session = self._get_session(session_id)
        self.notification_service.publish(
            SESSION_CANCELLED,
            [session.tutor_id, session.student_id],
            {
                "session_id": session_id,
                "cancelled_by": role,
                "refund_amount": decision.refund_amount,
                "refund_status": refund_status,
            },
        )
        return CancellationResult(
            session=session,
            refund_amount=decision.refund_amount,
            tutor_payout=decision.tutor_payout,
            hours_before_session=hours,
            refund_status=refund_status,
            refund_id=refund_id,
            refund_error=refund_error,
            payout_error=payout_error,
            meeting_teardown=teardown,
            policy_basis=decision.policy_basis,
        )

    def _ensure_cancellable(self, session: TutoringSession) -> None:
        if session.status == SessionStatus.CANCELLED.value:
            raise ConflictException(
                "Session is already cancelled",
                code="ALREADY_CANCELLED",
                details={"session_id": session.id},
            )
        if session.status == SessionStatus.COMPLETED.value or session.completion_date:
            raise ConflictException(
                "Completed sessions cannot be cancelled",
                code="CANNOT_CANCEL_COMPLETED",
                details={"session_id": session.id},
            )

    def _void_live_authorization(self, session_id: str) -> Optional[PaymentTransaction]:
        """
        Cancel the session's live intent.

        Returns the transaction when the intent turns out to have succeeded
        already; that payment is then refunded like any other. Otherwise the
        row is marked failed and a later success arrives through the webhook.
        """
        live = self.payment_repository.get_live_transaction(session_id)
        if live is None:
            return None
        intent_id = live.stripe_payment_intent_id
        try:
            self.stripe_service.cancel_payment_intent(intent_id)
        except PaymentProcessorException as e:
            self.logger.warning(f"Could not cancel payment intent {intent_id}: {e.message}")
            intent = self._retrieve_intent(intent_id)
            if intent is not None and getattr(intent, "status", None) == "succeeded":
                with self.transaction():
                    self.payment_repository.mark_completed(
                        live.id, charge_id=getattr(intent, "latest_charge", None)
                    )
                self.payment_repository.refresh(live)
                self.logger.warning(
                    f"Payment intent {intent_id} succeeded before session {session_id} "
                    f"was cancelled; refunding under the cancellation policy"
                )
                return live
        with self.transaction():
            self.payment_repository.mark_failed(live.id, reason="session_cancelled")
        return None

    def _retrieve_intent(self, intent_id: str) -> Optional[Any]:
        try:
            return self.retry_policy.call(
                lambda: self.stripe_service.retrieve_payment_intent(intent_id),
                operation="retrieve_payment_intent",
            )
        except PaymentProcessorException as e:
            self.logger.error(f"Could not read payment intent {intent_id}: {e.message}")
            return None

    def _apply_paid_amount(
        self, session_id: str, role: str, hours: int, transaction: PaymentTransaction
    ) -> RefundDecision:
        """Re-run the refund policy on money that was found paid after cancelling."""
        decision = self.refund_policy.evaluate(role, hours, transaction.amount)
        with self.transaction():
            self.session_repository.update(
                session_id,
                refund_amount=decision.refund_amount,
                payment_status=SessionPaymentStatus.PAID.value,
            )
        return decision

    @BaseService.measure_operation("reconcile_late_payment")
    def reconcile_late_payment(
        self, session_id: str, transaction: PaymentTransaction, charge_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Handle a payment that succeeded for an already cancelled session.

        The money is recorded as received and the refund policy stored on the
        session is applied to it. A session that already carries a refund is
        left alone, so redelivered events do not refund twice.
        """
        session = self._get_session(session_id)
        with self.transaction():
            self.payment_repository.mark_completed(
                transaction.id, charge_id=charge_id, allow_failed=True
            )
        self.payment_repository.refresh(transaction)

        if session.refund_id or session.payment_status in (
            SessionPaymentStatus.REFUNDED.value,
            SessionPaymentStatus.PARTIALLY_REFUNDED.value,
        ):
            return {"refund_status": "already_refunded", "refund_id": session.refund_id}

        role = session.role_of(session.cancelled_by) or "student"
        hours = session.hours_before_session or 0
        decision = self._apply_paid_amount(session_id, role, hours, transaction)
        self.logger.warning(
            f"Payment {transaction.stripe_payment_intent_id} arrived after session {session_id} "
            f"was cancelled: refunding {decision.refund_amount} of {transaction.amount}"
        )

        refund_status, refund_id, refund_error = self._refund(
            session_id, session.cancelled_by or "system", transaction, decision
        )
        payout_error = self._resolve_tutor_share(session_id, transaction, decision)
        return {
            "refund_status": refund_status,
            "refund_amount": decision.refund_amount,
            "refund_id": refund_id,
            "refund_error": refund_error,
            "payout_error": payout_error,
        }

    def _refund(
        self,
        session_id: str,
        cancelled_by_user_id: str,
        transaction: Optional[PaymentTransaction],
        decision: RefundDecision,
    ) -> tuple[str, Optional[str], Optional[str]]:
        if transaction is None or decision.refund_amount <= 0:
            prometheus_metrics.inc_refund(REFUND_NOT_REQUIRED)
            return REFUND_NOT_REQUIRED, None, None

        try:
            refund = self.retry_policy.call(
                lambda: self.stripe_service.create_refund(
                    payment_intent_id=transaction.stripe_payment_intent_id,
                    amount_cents=decision.refund_amount,
                    metadata={
                        "session_id": session_id,
                        "cancelled_by": cancelled_by_user_id,
                        "hours_before_session": str(decision.hours_before_session),
                    },
                    idempotency_key=f"refund-{session_id}",
                    reverse_transfer=transaction.payment_type == PaymentType.CONNECT_DIRECT.value,
                ),
                operation="create_refund",
            )
        except PaymentProcessorException as e:
            self.logger.error(f"Refund for cancelled session {session_id} failed: {e.message}")
            with self.transaction():
                self.session_repository.update(
                    session_id,
                    payment_status=SessionPaymentStatus.REFUND_FAILED.value,
                    refund_error=e.message,
                )
            prometheus_metrics.inc_refund(REFUND_FAILED)
            return REFUND_FAILED, None, e.message

        status = (
            SessionPaymentStatus.REFUNDED
            if decision.refund_amount >= transaction.amount
            else SessionPaymentStatus.PARTIALLY_REFUNDED
        )
        with self.transaction():
            self.session_repository.update(
                session_id, payment_status=status.value, refund_id=refund.id, refund_error=None
            )
        prometheus_metrics.inc_refund(REFUND_SUCCEEDED)
        return REFUND_SUCCEEDED, refund.id, None

    def _resolve_tutor_share(
        self,
        session_id: str,
        transaction: Optional[PaymentTransaction],
        decision: RefundDecision,
    ) -> Optional[str]:
        """Settle or drop the tutor's payout row; returns an error message on failure."""
        try:
            if transaction is not None and decision.tutor_payout > 0:
                self.settlement_service.settle_cancellation_payout(
                    session_id, transaction, decision.tutor_payout
                )
                return None

            placeholder = self.transfer_repository.get_by_session_id(session_id)
            if placeholder is not None and not placeholder.is_settled:
                with self.transaction():
                    self.transfer_repository.delete_unsettled(placeholder.id)
                self.logger.info(f"Removed payout placeholder for cancelled session {session_id}")
        except (ServiceException, RepositoryException) as e:
            message = e.message if isinstance(e, ServiceException) else str(e)
            self.logger.error(f"Tutor payout for cancelled session {session_id} failed: {message}")
            return message
        return None

    def _teardown_meeting(self, session_id: str) -> str:
        session = self._get_session(session_id)
        if not session.meeting_id:
            return "not_applicable"
        try:
            self.zoom_client.delete_meeting(session.meeting_id)
        except ZoomClientError as e:
            self.logger.warning(
                f"Meeting teardown for session {session_id} failed: {e.message}",
                extra={"status_code": e.status_code},
            )
            return "failed"
        with self.transaction():
            self.session_repository.update(session_id, meeting_id=None, meeting_join_url=None)
        return "deleted"

    def _get_session(self, session_id: str) -> TutoringSession:
        session = self.session_repository.get_by_id(session_id)
        if not session:
            raise NotFoundException("Session not found", details={"session_id": session_id})
        return session

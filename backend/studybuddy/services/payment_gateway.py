# backend/studybuddy/services/payment_gateway.py
"""
Payment Authorization Gateway.

Creates the processor authorization for a session and mirrors it in the
local PaymentTransaction ledger. Two paths:

- direct: the tutor has an onboarded Stripe Connect account, so the charge
  names it as destination and the platform keeps an application fee;
- two-stage: funds settle to the platform and an unsettled PendingTransfer
  placeholder records the tutor's share until they finish onboarding.

Authorizing the same session again while its intent is still usable returns
the existing transaction instead of creating a second intent.
"""

from dataclasses import dataclass
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import ulid

from ..core.config import settings
from ..core.enums import (
    PaymentType,
    SessionPaymentStatus,
    SessionStatus,
    TransactionStatus,
)
from ..core.exceptions import (
    ConflictException,
    NotFoundException,
    PaymentAuthorizationFailedException,
    PaymentProcessorException,
    ValidationException,
)
from ..core.money import Money
from ..core.retry import RetryPolicy
from ..models.payment import PaymentTransaction
from ..models.tutor import TutorProfile
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .fees import application_fee_for
from .stripe_service import StripeService

logger = logging.getLogger(__name__)

# PaymentIntent states in which the student can still complete payment
USABLE_INTENT_STATUSES = frozenset(
    {"requires_payment_method", "requires_confirmation", "requires_action"}
)
IN_FLIGHT_INTENT_STATUSES = frozenset({"processing", "requires_capture"})


def default_payment_retry_policy() -> RetryPolicy:
    """Retry transient processor failures per configuration."""
    return RetryPolicy(
        max_attempts=settings.payment_retry_max_attempts,
        backoff_seconds=tuple(settings.payment_retry_backoff_seconds),
        retry_if=lambda exc: bool(getattr(exc, "transient", False)),
    )


@dataclass(frozen=True)
class AuthorizationResult:
    intent_id: str
    client_secret: Optional[str]
    transaction_id: str
    payment_type: str
    amount: int
    platform_fee: int
    reused: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent_id": self.intent_id,
            "client_secret": self.client_secret,
            "transaction_id": self.transaction_id,
            "payment_type": self.payment_type,
            "amount": self.amount,
            "platform_fee": self.platform_fee,
            "reused": self.reused,
        }


class PaymentAuthorizationGateway(BaseService):
    """Orchestrates Stripe authorizations for sessions."""

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

    @BaseService.measure_operation("authorize")
    def authorize(
        self,
        session_id: str,
        amount: Money,
        tutor_id: str,
        student_id: str,
        description: Optional[str] = None,
    ) -> AuthorizationResult:
        """
        Create (or reuse) the payment authorization for a session.

        Raises:
            NotFoundException: session does not exist
            ValidationException: tutor/student do not match the session
            ConflictException: session is no longer open
            PaymentAuthorizationFailedException: processor rejected the request
        """
        if not isinstance(amount, Money):
            raise ValidationException(
                "Amount must be given in explicit minor units", code="INVALID_AMOUNT"
            )

        session = self.session_repository.get_by_id(session_id)
        if not session:
            raise NotFoundException("Session not found", details={"session_id": session_id})
        if session.tutor_id != tutor_id or session.student_id != student_id:
            raise ValidationException(
                "Tutor and student do not match the session",
                code="SESSION_PARTY_MISMATCH",
                details={"session_id": session_id},
            )
        if session.status not in (s.value for s in SessionStatus.open_statuses()):
            raise ConflictException(
                f"Session cannot be paid for - current status: {session.status}",
                code="SESSION_NOT_PAYABLE",
                details={"session_id": session_id, "status": session.status},
            )

        existing = self._reuse_existing(session_id)
        if existing is not None:
            prometheus_metrics.inc_payment_authorization(existing.payment_type, "reused")
            return existing

        profile = self.tutor_repository.get_by_user_id(tutor_id)
        destination = self._resolve_destination(profile, tutor_id)
        payment_type = PaymentType.CONNECT_DIRECT if destination else PaymentType.TWO_STAGE
        platform_fee = application_fee_for(amount.cents)

        metadata = {
            "session_id": session_id,
            "tutor_id": tutor_id,
            "student_id": student_id,
            "payment_type": payment_type.value,
            "platform_fee": str(platform_fee),
        }
        if payment_type == PaymentType.TWO_STAGE:
            metadata["requires_transfer"] = "true"

        # One key for every retry of this authorize call
        idempotency_key = f"authorize-{session_id}-{ulid.ULID()}"
        try:
            intent = self.retry_policy.call(
                lambda: self.stripe_service.create_payment_intent(
                    amount=amount,
                    description=description or f"Tutoring session {session_id}",
                    metadata=metadata,
                    idempotency_key=idempotency_key,
                    destination_account_id=destination,
                    application_fee_amount=platform_fee if destination else None,
                    transfer_group=f"session_{session_id}",
                ),
                operation="create_payment_intent",
            )
        except PaymentProcessorException as e:
            prometheus_metrics.inc_payment_authorization(payment_type.value, "failed")
            raise PaymentAuthorizationFailedException(
                f"Payment authorization failed: {e.message}",
                details={
                    "session_id": session_id,
                    "processor_code": e.processor_code,
                    "retryable": True,
                },
            ) from e

        result = self._record_transaction(
            session_id=session_id,
            tutor_id=tutor_id,
            student_id=student_id,
            amount=amount,
            platform_fee=platform_fee,
            payment_type=payment_type,
            intent=intent,
        )
        prometheus_metrics.inc_payment_authorization(
            payment_type.value, "reused" if result.reused else "created"
        )
        return result

    def _reuse_existing(self, session_id: str) -> Optional[AuthorizationResult]:
        live = self.payment_repository.get_live_transaction(session_id)
        if live is None:
            return None

        intent = self.retry_policy.call(
            lambda: self.stripe_service.retrieve_payment_intent(live.stripe_payment_intent_id),
            operation="retrieve_payment_intent",
        )
        status = getattr(intent, "status", None)

        if status in USABLE_INTENT_STATUSES or status in IN_FLIGHT_INTENT_STATUSES:
            self.logger.info(
                f"Reusing payment intent {live.stripe_payment_intent_id} for session {session_id}"
            )
            return self._result_for(live, intent, reused=True)

        if status == "succeeded":
            with self.transaction():
                self.payment_repository.mark_completed(
                    live.id, charge_id=getattr(intent, "latest_charge", None)
                )
                self.session_repository.update(
                    session_id, payment_status=SessionPaymentStatus.PAID.value
                )
            return self._result_for(live, intent, reused=True)

        # canceled (or unknown): retire the row so a fresh intent can be created
        with self.transaction():
            self.payment_repository.mark_failed(live.id, reason=f"superseded: intent {status}")
        self.logger.info(
            f"Payment intent {live.stripe_payment_intent_id} is {status}; creating a new one"
        )
        return None

    def _resolve_destination(self, profile: Optional[TutorProfile], tutor_id: str) -> Optional[str]:
        """Connected account id for the direct path, or None for two-stage."""
        if profile is None or not profile.stripe_account_id:
            # TutorPayoutNotConfigured: not an error, fall back to two-stage
            self.logger.info(
                f"Tutor {tutor_id} has no payout account configured; using two-stage payment"
            )
            return None
        if profile.onboarding_complete:
            return profile.stripe_account_id

        try:
            onboarded = self.retry_policy.call(
                lambda: self.stripe_service.is_account_onboarded(profile.stripe_account_id),
                operation="retrieve_account",
            )
        except PaymentProcessorException as e:
            self.logger.warning(
                f"Could not check payout account for tutor {tutor_id}: {e.message}; "
                "using two-stage payment"
            )
            return None

        if onboarded:
            with self.transaction():
                self.tutor_repository.set_onboarding_complete(profile.id, True)
            return profile.stripe_account_id
        return None

    def _record_transaction(
        self,
        *,
        session_id: str,
        tutor_id: str,
        student_id: str,
        amount: Money,
        platform_fee: int,
        payment_type: PaymentType,
        intent: Any,
    ) -> AuthorizationResult:
        status = (
            TransactionStatus.PROCESSING
            if getattr(intent, "status", None) in IN_FLIGHT_INTENT_STATUSES
            else TransactionStatus.PENDING
        )
        try:
            with self.transaction():
                transaction = self.payment_repository.create(
                    session_id=session_id,
                    student_id=student_id,
                    tutor_id=tutor_id,
                    amount=amount.cents,
                    currency=amount.currency,
                    status=status.value,
                    stripe_payment_intent_id=intent.id,
                    platform_fee=platform_fee,
                    payment_type=payment_type.value,
                    requires_transfer=payment_type == PaymentType.TWO_STAGE,
                )
                if payment_type == PaymentType.TWO_STAGE:
                    self._upsert_placeholder(transaction, amount, platform_fee)
                self.session_repository.update(
                    session_id, payment_status=SessionPaymentStatus.PENDING.value
                )
        except IntegrityError:
            self.db.rollback()
            return self._resolve_lost_race(session_id, intent)

        self.logger.info(
            f"Created {payment_type.value} payment intent {intent.id} for session {session_id}"
        )
        return self._result_for(transaction, intent, reused=False)

    def _upsert_placeholder(
        self, transaction: PaymentTransaction, amount: Money, platform_fee: int
    ) -> None:
        net = max(amount.cents - platform_fee, 0)
        placeholder = self.transfer_repository.get_by_session_id(transaction.session_id)
        if placeholder is None:
            self.transfer_repository.create(
                session_id=transaction.session_id,
                tutor_id=transaction.tutor_id,
                student_id=transaction.student_id,
                payment_transaction_id=transaction.id,
                gross_amount=amount.cents,
                amount=net,
                platform_fee=platform_fee,
                processor_fee=0,
                currency=amount.currency,
            )
        elif not placeholder.is_settled:
            self.transfer_repository.update(
                placeholder.id,
                payment_transaction_id=transaction.id,
                gross_amount=amount.cents,
                amount=net,
                platform_fee=platform_fee,
            )

    def _resolve_lost_race(self, session_id: str, intent: Any) -> AuthorizationResult:
        """A concurrent request recorded its transaction first; keep theirs."""
        winner = self.payment_repository.get_live_transaction(session_id)
        try:
            self.stripe_service.cancel_payment_intent(intent.id)
        except PaymentProcessorException as e:
            self.logger.warning(f"Failed to cancel duplicate intent {intent.id}: {e.message}")
        if winner is None:
            raise PaymentAuthorizationFailedException(
                "Payment authorization could not be recorded",
                details={"session_id": session_id, "retryable": True},
            )
        self.logger.info(f"Duplicate authorization for session {session_id}; reusing {winner.id}")
        winner_intent = self.retry_policy.call(
            lambda: self.stripe_service.retrieve_payment_intent(winner.stripe_payment_intent_id),
            operation="retrieve_payment_intent",
        )
        return self._result_for(winner, winner_intent, reused=True)

    @staticmethod
    def _result_for(
        transaction: PaymentTransaction, intent: Any, *, reused: bool
    ) -> AuthorizationResult:
        return AuthorizationResult(
            intent_id=transaction.stripe_payment_intent_id,
            client_secret=getattr(intent, "client_secret", None),
            transaction_id=transaction.id,
            payment_type=transaction.payment_type,
            amount=transaction.amount,
            platform_fee=transaction.platform_fee,
            reused=reused,
        )

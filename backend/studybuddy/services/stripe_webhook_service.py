# backend/studybuddy/services/stripe_webhook_service.py
"""
Stripe webhook processing.

Webhooks are the second producer of payment state next to the request path.
Every handler applies conditional ledger writes, so redelivered events and
events racing with confirmation converge on the same state.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.enums import SessionPaymentStatus, SessionStatus
from ..core.exceptions import DomainException
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .cancellation_service import CancellationService
from .settlement_service import SettlementService
from .stripe_service import StripeService

logger = logging.getLogger(__name__)


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a StripeObject or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(key, default)
    try:
        return obj[key]
    except (KeyError, TypeError, AttributeError):
        return getattr(obj, key, default)


class StripeWebhookService(BaseService):
    def __init__(
        self,
        db: Session,
        stripe_service: Optional[StripeService] = None,
        settlement_service: Optional[SettlementService] = None,
        cancellation_service: Optional[CancellationService] = None,
    ):
        super().__init__(db)
        self.stripe_service = stripe_service or StripeService()
        self.settlement_service = settlement_service or SettlementService(
            db, stripe_service=self.stripe_service
        )
        self.cancellation_service = cancellation_service
        self.session_repository = RepositoryFactory.create_session_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.tutor_repository = RepositoryFactory.create_tutor_profile_repository(db)

    def _cancellation_service(self) -> CancellationService:
        if self.cancellation_service is None:
            self.cancellation_service = CancellationService(
                self.db,
                stripe_service=self.stripe_service,
                settlement_service=self.settlement_service,
            )
        return self.cancellation_service

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the signature and process the event."""
        event = self.stripe_service.construct_webhook_event(payload, signature)
        return self.handle_event(event)

    @BaseService.measure_operation("handle_webhook_event")
    def handle_event(self, event: Any) -> Dict[str, Any]:
        """Process an already-verified webhook event."""
        event_type = _get(event, "type", "") or ""
        data = _get(_get(event, "data", {}) or {}, "object", {}) or {}
        self.logger.info(f"Processing webhook event: {event_type}")

        handlers = {
            "payment_intent.succeeded": self._payment_intent_succeeded,
            "payment_intent.payment_failed": self._payment_intent_failed,
            "payment_intent.canceled": self._payment_intent_failed,
            "charge.succeeded": self._charge_succeeded,
            "account.updated": self._account_updated,
        }
        handler = handlers.get(event_type)
        if handler is None:
            self.logger.info(f"Unhandled webhook event type: {event_type}")
            return {"success": True, "event_type": event_type, "handled": False}

        outcome = handler(data)
        return {"success": True, "event_type": event_type, "handled": True, **outcome}

    def _payment_intent_succeeded(self, intent: Any) -> Dict[str, Any]:
        intent_id = _get(intent, "id")
        transaction = self.payment_repository.get_by_payment_intent_id(intent_id)
        if transaction is None:
            self.logger.warning(f"Payment record not found for webhook event {intent_id}")
            return {"transaction_found": False}

        charge_id = _get(intent, "latest_charge")
        session = self.session_repository.get_by_id(transaction.session_id)
        if session is not None and session.status == SessionStatus.CANCELLED.value:
            reconciled = self._cancellation_service().reconcile_late_payment(
                session.id, transaction, charge_id=charge_id
            )
            return {"transaction_found": True, "session_cancelled": True, **reconciled}

        with self.transaction():
            # A failed row can still be paid when the card is retried on the same intent
            self.payment_repository.mark_completed(
                transaction.id, charge_id=charge_id, allow_failed=True
            )
            if session is not None and session.payment_status in (
                SessionPaymentStatus.UNPAID.value,
                SessionPaymentStatus.PENDING.value,
            ):
                self.session_repository.update(
                    session.id, payment_status=SessionPaymentStatus.PAID.value
                )

        outcome: Dict[str, Any] = {"transaction_found": True, "settlement": None}
        session = self.session_repository.get_by_id(transaction.session_id)
        if session is not None and session.status == SessionStatus.COMPLETED.value:
            try:
                outcome["settlement"] = self.settlement_service.settle(session.id).status
            except DomainException as e:
                # Stripe must not retry the event over a settlement problem
                self.logger.error(f"Settlement after payment of {session.id} failed: {e.message}")
                outcome["settlement"] = "error"
        return outcome

    def _payment_intent_failed(self, intent: Any) -> Dict[str, Any]:
        intent_id = _get(intent, "id")
        transaction = self.payment_repository.get_by_payment_intent_id(intent_id)
        if transaction is None:
            self.logger.warning(f"Payment record not found for webhook event {intent_id}")
            return {"transaction_found": False}

        error = _get(intent, "last_payment_error") or {}
        reason = _get(error, "message") or _get(intent, "cancellation_reason") or _get(
            intent, "status"
        )
        with self.transaction():
            self.payment_repository.mark_failed(transaction.id, reason=reason)
        return {"transaction_found": True}

    def _charge_succeeded(self, charge: Any) -> Dict[str, Any]:
        intent_id = _get(charge, "payment_intent")
        transaction = (
            self.payment_repository.get_by_payment_intent_id(intent_id) if intent_id else None
        )
        if transaction is None:
            return {"transaction_found": False}
        with self.transaction():
            self.payment_repository.set_charge_id(transaction.id, _get(charge, "id"))
        return {"transaction_found": True}

    def _account_updated(self, account: Any) -> Dict[str, Any]:
        account_id = _get(account, "id")
        if not (_get(account, "details_submitted", False) and _get(account, "payouts_enabled", False)):
            return {"onboarded": False}

        profile = self.tutor_repository.get_by_stripe_account_id(account_id)
        if profile is None:
            self.logger.warning(f"No tutor profile for connected account {account_id}")
            return {"onboarded": False}

        with self.transaction():
            self.tutor_repository.set_onboarding_complete(profile.id, True)
        self.logger.info(f"Account {account_id} onboarding completed")

        try:
            batch = self.settlement_service.execute_transfers(profile.user_id)
            transfers: Optional[Dict[str, Any]] = batch.to_dict()
        except DomainException as e:
            self.logger.error(f"Transfers after onboarding of {profile.user_id} failed: {e.message}")
            transfers = None
        return {"onboarded": True, "transfers": transfers}

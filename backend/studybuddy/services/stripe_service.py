# backend/studybuddy/services/stripe_service.py
"""
Stripe adapter for the booking core.

Thin wrapper over the ``stripe`` SDK: every call translates
``stripe.StripeError`` into ``PaymentProcessorException`` (flagging transport
errors as transient) and logs the failure. Retrying is the caller's decision,
made with an explicit ``RetryPolicy``; this class never retries on its own.
"""

import logging
from typing import Any, Callable, Dict, Optional, TypeVar

import stripe

from ..core.config import settings
from ..core.exceptions import PaymentProcessorException, ValidationException
from ..core.money import Money

logger = logging.getLogger(__name__)

R = TypeVar("R")

TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)


class StripeService:
    """Payment processor collaborator backed by Stripe Connect."""

    def __init__(self) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.currency = settings.stripe_currency
        self.stripe_configured = False

        secret = settings.stripe_secret_key.get_secret_value()
        if secret:
            stripe.api_key = secret
            # Retries are driven by RetryPolicy in the calling service
            stripe.max_network_retries = 0
            try:
                stripe.default_http_client = stripe.RequestsClient(
                    timeout=settings.stripe_timeout_seconds
                )
            except AttributeError:
                self.logger.warning("Stripe SDK has no RequestsClient; using default HTTP client")
            self.stripe_configured = True
        else:
            self.logger.warning("Stripe secret key not configured")

    def _call(self, operation: str, func: Callable[[], R]) -> R:
        try:
            return func()
        except stripe.StripeError as e:
            transient = isinstance(e, TRANSIENT_STRIPE_ERRORS)
            self.logger.error(
                f"Stripe error during {operation}: {str(e)}",
                extra={"operation": operation, "stripe_code": getattr(e, "code", None)},
            )
            raise PaymentProcessorException(
                getattr(e, "user_message", None) or str(e) or f"Stripe {operation} failed",
                operation=operation,
                processor_code=getattr(e, "code", None),
                transient=transient,
                details={"http_status": getattr(e, "http_status", None)},
            ) from e

    # Payment intents

    def create_payment_intent(
        self,
        *,
        amount: Money,
        description: Optional[str],
        metadata: Dict[str, str],
        idempotency_key: str,
        destination_account_id: Optional[str] = None,
        application_fee_amount: Optional[int] = None,
        transfer_group: Optional[str] = None,
    ) -> Any:
        """
        Create a PaymentIntent in minor units.

        With ``destination_account_id`` this is a destination charge: Stripe
        routes the funds to the connected account minus the application fee.
        Without it the funds stay on the platform balance.
        """
        params: Dict[str, Any] = {
            "amount": amount.cents,
            "currency": amount.currency,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
            "idempotency_key": idempotency_key,
        }
        if description:
            params["description"] = description
        if transfer_group:
            params["transfer_group"] = transfer_group
        if destination_account_id:
            params["transfer_data"] = {"destination": destination_account_id}
            params["on_behalf_of"] = destination_account_id
            params["application_fee_amount"] = application_fee_amount or 0

        return self._call("create_payment_intent", lambda: stripe.PaymentIntent.create(**params))

    def retrieve_payment_intent(self, payment_intent_id: str) -> Any:
        return self._call(
            "retrieve_payment_intent", lambda: stripe.PaymentIntent.retrieve(payment_intent_id)
        )

    def cancel_payment_intent(self, payment_intent_id: str) -> Any:
        return self._call(
            "cancel_payment_intent", lambda: stripe.PaymentIntent.cancel(payment_intent_id)
        )

    # Refunds and transfers

    def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount_cents: int,
        metadata: Dict[str, str],
        idempotency_key: str,
        reverse_transfer: bool = False,
    ) -> Any:
        params: Dict[str, Any] = {
            "payment_intent": payment_intent_id,
            "amount": amount_cents,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        }
        if reverse_transfer:
            params["reverse_transfer"] = True
        return self._call("create_refund", lambda: stripe.Refund.create(**params))

    def create_transfer(
        self,
        *,
        amount_cents: int,
        currency: str,
        destination: str,
        transfer_group: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        source_transaction: Optional[str] = None,
    ) -> Any:
        params: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "destination": destination,
            "transfer_group": transfer_group,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        }
        if source_transaction:
            params["source_transaction"] = source_transaction
        return self._call("create_transfer", lambda: stripe.Transfer.create(**params))

    def retrieve_transfer(self, transfer_id: str) -> Any:
        return self._call("retrieve_transfer", lambda: stripe.Transfer.retrieve(transfer_id))

    # Connected accounts

    def retrieve_account(self, account_id: str) -> Any:
        return self._call("retrieve_account", lambda: stripe.Account.retrieve(account_id))

    def is_account_onboarded(self, account_id: str) -> bool:
        """Onboarding is complete when charges are enabled and details are submitted."""
        account = self.retrieve_account(account_id)
        return bool(
            getattr(account, "charges_enabled", False)
            and getattr(account, "details_submitted", False)
        )

    # Webhooks

    def construct_webhook_event(self, payload: bytes, signature: Optional[str]) -> Any:
        """Verify a webhook signature and return the parsed event."""
        secret = settings.stripe_webhook_secret.get_secret_value()
        if not secret:
            raise ValidationException(
                "Webhook secret is not configured", code="WEBHOOK_NOT_CONFIGURED"
            )
        if not signature:
            raise ValidationException("Missing Stripe-Signature header", code="INVALID_SIGNATURE")
        try:
            return stripe.Webhook.construct_event(payload, signature, secret)
        except ValueError as e:
            self.logger.error(f"Invalid webhook payload: {str(e)}")
            raise ValidationException("Invalid webhook payload", code="INVALID_PAYLOAD")
        except stripe.SignatureVerificationError as e:
            self.logger.error(f"Invalid webhook signature: {str(e)}")
            raise ValidationException("Invalid webhook signature", code="INVALID_SIGNATURE")

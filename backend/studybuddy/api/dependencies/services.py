# backend/studybuddy/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

This module provides factory functions that create service instances
with their required dependencies properly injected. Tests override
``get_stripe_service`` and ``get_zoom_client`` to swap in fakes.
"""

from functools import lru_cache
import logging
from typing import Any

from fastapi import Depends
from sqlalchemy.orm import Session

from ...integrations import build_zoom_client
from ...services.availability_service import AvailabilityService
from ...services.booking_service import BookingService
from ...services.cancellation_service import CancellationService
from ...services.confirmation_service import ConfirmationService
from ...services.notification_service import NotificationService
from ...services.payment_gateway import PaymentAuthorizationGateway
from ...services.settlement_service import SettlementService
from ...services.stripe_service import StripeService
from ...services.stripe_webhook_service import StripeWebhookService
from .database import get_db

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_stripe_service() -> StripeService:
    """Get the process-wide Stripe adapter."""
    return StripeService()


@lru_cache(maxsize=1)
def get_zoom_client() -> Any:
    return build_zoom_client()


def get_notification_service() -> NotificationService:
    return NotificationService()


def get_availability_service(db: Session = Depends(get_db)) -> AvailabilityService:
    return AvailabilityService(db)


def get_payment_gateway(
    db: Session = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
) -> PaymentAuthorizationGateway:
    return PaymentAuthorizationGateway(db, stripe_service=stripe_service)


def get_settlement_service(
    db: Session = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
) -> SettlementService:
    return SettlementService(db, stripe_service=stripe_service)


def get_booking_service(
    db: Session = Depends(get_db),
    payment_gateway: PaymentAuthorizationGateway = Depends(get_payment_gateway),
    notification_service: NotificationService = Depends(get_notification_service),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> BookingService:
    """
    Get booking service instance.

    Args:
        db: Database session
        payment_gateway: Authorization gateway sharing the request's session
        notification_service: Notification publisher
        availability_service: Schedule lookups

    Returns:
        BookingService instance
    """
    return BookingService(
        db,
        payment_gateway=payment_gateway,
        notification_service=notification_service,
        availability_service=availability_service,
    )


def get_confirmation_service(
    db: Session = Depends(get_db),
    settlement_service: SettlementService = Depends(get_settlement_service),
    notification_service: NotificationService = Depends(get_notification_service),
) -> ConfirmationService:
    return ConfirmationService(
        db, settlement_service=settlement_service, notification_service=notification_service
    )


def get_cancellation_service(
    db: Session = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
    settlement_service: SettlementService = Depends(get_settlement_service),
    notification_service: NotificationService = Depends(get_notification_service),
    zoom_client: Any = Depends(get_zoom_client),
) -> CancellationService:
    return CancellationService(
        db,
        stripe_service=stripe_service,
        settlement_service=settlement_service,
        notification_service=notification_service,
        zoom_client=zoom_client,
    )


def get_stripe_webhook_service(
    db: Session = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
    settlement_service: SettlementService = Depends(get_settlement_service),
    cancellation_service: CancellationService = Depends(get_cancellation_service),
) -> StripeWebhookService:
    return StripeWebhookService(
        db,
        stripe_service=stripe_service,
        settlement_service=settlement_service,
        cancellation_service=cancellation_service,
    )

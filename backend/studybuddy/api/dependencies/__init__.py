# backend/studybuddy/api/dependencies/__init__.py
"""
Central export point for all dependencies.

This module re-exports all dependencies from submodules
for convenient access throughout the application.
"""

from .auth import UserPrincipal, get_current_user, require_admin
from .database import get_db
from .services import (
    get_availability_service,
    get_booking_service,
    get_cancellation_service,
    get_confirmation_service,
    get_notification_service,
    get_payment_gateway,
    get_settlement_service,
    get_stripe_service,
    get_stripe_webhook_service,
    get_zoom_client,
)

__all__ = [
    # Auth
    "UserPrincipal",
    "get_current_user",
    "require_admin",
    # Database
    "get_db",
    # Services
    "get_availability_service",
    "get_booking_service",
    "get_cancellation_service",
    "get_confirmation_service",
    "get_notification_service",
    "get_payment_gateway",
    "get_settlement_service",
    "get_stripe_service",
    "get_stripe_webhook_service",
    "get_zoom_client",
]

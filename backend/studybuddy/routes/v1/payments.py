# backend/studybuddy/routes/v1/payments.py
"""
Payment API Routes - API v1

Endpoints:
    POST /transfers/{tutor_id}/execute → Execute a tutor's settled transfers (admin)
    POST /webhooks/stripe              → Handle Stripe webhooks
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Request

from ...api.dependencies.auth import UserPrincipal, require_admin
from ...api.dependencies.services import get_settlement_service, get_stripe_webhook_service
from ...core.exceptions import DomainException, ValidationException
from ...schemas.payment import TransferBatchResponse, TransferExecuteRequest, WebhookResponse
from ...services.settlement_service import SettlementService
from ...services.stripe_webhook_service import StripeWebhookService
from .sessions import handle_domain_exception

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments-v1"])


@router.post("/transfers/{tutor_id}/execute", response_model=TransferBatchResponse)
async def execute_transfers(
    tutor_id: str,
    payload: Optional[TransferExecuteRequest] = Body(None),
    current_user: UserPrincipal = Depends(require_admin),
    settlement_service: SettlementService = Depends(get_settlement_service),
) -> TransferBatchResponse:
    """
    Execute every settled pending transfer for a tutor.

    Per-row failures are reported in the response; rows that failed with a
    transient processor error stay pending for the next run.
    """
    retry_failed = payload.retry_failed if payload else False
    try:
        result = await asyncio.to_thread(
            settlement_service.execute_transfers,
            tutor_id,
            retry_failed=retry_failed,
            processed_by=current_user.id,
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return TransferBatchResponse.model_validate(result.to_dict())


@router.post("/webhooks/stripe", response_model=WebhookResponse)
async def handle_stripe_webhook(
    request: Request,
    webhook_service: StripeWebhookService = Depends(get_stripe_webhook_service),
) -> WebhookResponse:
    """
    Handle Stripe webhook events.

    Note:
        This endpoint has no authentication as it uses webhook signature verification
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    try:
        if not sig_header:
            logger.warning("Webhook received without signature")
            raise ValidationException("No signature", code="INVALID_SIGNATURE")
        outcome = await asyncio.to_thread(webhook_service.handle_webhook, payload, sig_header)
    except DomainException as exc:
        handle_domain_exception(exc)

    details = {
        key: value
        for key, value in outcome.items()
        if key not in {"success", "event_type", "handled"}
    }
    return WebhookResponse(
        success=bool(outcome.get("success", True)),
        event_type=str(outcome.get("event_type", "")),
        handled=bool(outcome.get("handled", False)),
        details=details,
    )

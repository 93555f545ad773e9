# backend/studybuddy/routes/v1/sessions.py
"""
Session API Routes - API v1

Endpoints:
    POST /                      → Book a session and authorize its payment
    GET /{session_id}           → Get a session (participants and admins)
    POST /{session_id}/authorize → Retry payment authorization
    POST /{session_id}/confirm  → Confirm attendance for the caller's side
    POST /{session_id}/settle   → Settle a completed session (admin)
    POST /{session_id}/cancel   → Cancel and apply the refund policy
"""

import asyncio
import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status

from ...api.dependencies.auth import UserPrincipal, get_current_user, require_admin
from ...api.dependencies.services import (
    get_booking_service,
    get_cancellation_service,
    get_confirmation_service,
    get_settlement_service,
)
from ...core.exceptions import DomainException
from ...schemas.payment import AuthorizationResponse
from ...schemas.session import (
    AuthorizeRequest,
    BookingCreate,
    BookingResponse,
    CancellationResponse,
    CancelRequest,
    ConfirmationResponse,
    ConfirmRequest,
    SessionResponse,
    SettlementResponse,
)
from ...services.booking_service import BookingService
from ...services.cancellation_service import CancellationService
from ...services.confirmation_service import ConfirmationService
from ...services.settlement_service import SettlementService

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["sessions-v1"])


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    payload: BookingCreate,
    current_user: UserPrincipal = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    """
    Book a session as the authenticated student.

    A 500 ``PAYMENT_AUTHORIZATION_FAILED`` response still carries the created
    ``session_id`` in its details; retry with ``POST /{session_id}/authorize``.
    """
    try:
        result = await asyncio.to_thread(
            booking_service.create_booking,
            student_id=current_user.id,
            tutor_id=payload.tutor_id,
            start_time=payload.start_time,
            end_time=payload.end_time,
            course_id=payload.course_id,
            notes=payload.notes,
            session_type=payload.session_type.value,
            location=payload.location,
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return BookingResponse.model_validate(result.to_dict())


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    current_user: UserPrincipal = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> SessionResponse:
    try:
        session = await asyncio.to_thread(
            booking_service.get_session,
            session_id,
            current_user.id,
            allow_admin=current_user.is_admin,
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return SessionResponse.model_validate(session.to_dict())


@router.post("/{session_id}/authorize", response_model=AuthorizationResponse)
async def authorize_session(
    session_id: str,
    payload: Optional[AuthorizeRequest] = Body(None),
    current_user: UserPrincipal = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> AuthorizationResponse:
    """
    Authorize (or return the existing authorization for) a session's payment.

    The charged amount is the session price at the tutor's rate.
    """
    request = payload or AuthorizeRequest()
    try:
        result = await asyncio.to_thread(
            booking_service.authorize_session,
            session_id,
            current_user.id,
            request.description,
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return AuthorizationResponse.model_validate(result.to_dict())


@router.post("/{session_id}/confirm", response_model=ConfirmationResponse)
async def confirm_session(
    session_id: str,
    payload: ConfirmRequest,
    current_user: UserPrincipal = Depends(get_current_user),
    confirmation_service: ConfirmationService = Depends(get_confirmation_service),
) -> ConfirmationResponse:
    """
    Confirm the session for the caller's side.

    Repeating a confirmation is harmless. When both sides have confirmed the
    session completes and settles; a settlement failure is reported in
    ``settlement_error`` without undoing the completion.
    """
    try:
        result = await asyncio.to_thread(
            confirmation_service.confirm, session_id, payload.role, current_user.id
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return ConfirmationResponse.model_validate(result.to_dict())


@router.post("/{session_id}/settle", response_model=SettlementResponse)
async def settle_session(
    session_id: str,
    current_user: UserPrincipal = Depends(require_admin),
    settlement_service: SettlementService = Depends(get_settlement_service),
) -> SettlementResponse:
    try:
        result = await asyncio.to_thread(settlement_service.settle, session_id)
    except DomainException as exc:
        handle_domain_exception(exc)
    logger.info(f"Settlement of {session_id} requested by {current_user.id}: {result.status}")
    return SettlementResponse.model_validate(result.to_dict())


@router.post("/{session_id}/cancel", response_model=CancellationResponse)
async def cancel_session(
    session_id: str,
    payload: Optional[CancelRequest] = Body(None),
    current_user: UserPrincipal = Depends(get_current_user),
    cancellation_service: CancellationService = Depends(get_cancellation_service),
) -> CancellationResponse:
    """Cancel a session; the refund outcome is part of the response."""
    reason = payload.reason if payload else None
    try:
        result = await asyncio.to_thread(
            cancellation_service.cancel, session_id, current_user.id, reason
        )
    except DomainException as exc:
        handle_domain_exception(exc)
    return CancellationResponse.model_validate(result.to_dict())

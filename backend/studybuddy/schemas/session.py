# backend/studybuddy/schemas/session.py
"""
Tutoring session request/response schemas.

Request models forbid unknown fields. Datetimes must carry a timezone offset;
naive values are rejected rather than guessed.
"""

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import Field, ValidationInfo, field_validator

from ..core.enums import ConfirmationRole, SessionType
from ._strict_base import StrictModel, StrictRequestModel
from .payment import AuthorizationResponse


def _require_aware(value: datetime, field_name: str) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{field_name} must include a timezone offset")
    return value


class BookingCreate(StrictRequestModel):
    """Create a session with a student-selected time range."""

    tutor_id: str = Field(..., min_length=1, description="Tutor to book")
    start_time: datetime = Field(..., description="Session start (ISO-8601 with offset)")
    end_time: datetime = Field(..., description="Session end (ISO-8601 with offset)")
    course_id: Optional[str] = Field(None, max_length=64)
    notes: Optional[str] = Field(None, max_length=1000, description="Optional note from student")
    session_type: SessionType = Field(SessionType.VIRTUAL)
    location: Optional[str] = Field(None, max_length=500)

    @field_validator("start_time", "end_time")
    @classmethod
    def _aware(cls, value: datetime, info: ValidationInfo) -> datetime:
        return _require_aware(value, info.field_name or "value")


class AuthorizeRequest(StrictRequestModel):
    """
    Body for (re-)authorizing a session.

    The amount is always the booked session price; there is no way to pass
    one, and unknown fields are rejected.
    """

    description: Optional[str] = Field(None, max_length=255)


class ConfirmRequest(StrictRequestModel):
    role: ConfirmationRole = Field(..., description="Side the caller confirms for")


class CancelRequest(StrictRequestModel):
    reason: Optional[str] = Field(None, max_length=500)


class SessionResponse(StrictModel):
    id: str
    tutor_id: str
    student_id: str
    course_id: Optional[str] = None
    start_time: datetime
    end_time: datetime
    status: Literal["pending", "confirmed", "completed", "cancelled"]
    session_type: str
    location: Optional[str] = None
    notes: Optional[str] = None
    meeting_join_url: Optional[str] = None
    tutor_confirmed: bool
    student_confirmed: bool
    completion_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    hours_before_session: Optional[int] = None
    refund_amount: Optional[int] = None
    payment_status: str
    created_at: Optional[datetime] = None


class BookingResponse(StrictModel):
    session: SessionResponse
    authorization: AuthorizationResponse


class SettlementResponse(StrictModel):
    status: Literal["settled", "already_settled", "deferred"]
    tutor_amount: int
    platform_fee: int
    processor_fee: int
    pending_transfer_id: Optional[str] = None
    reason: Optional[str] = None


class ConfirmationResponse(StrictModel):
    session: SessionResponse
    both_confirmed: bool
    settlement: Optional[SettlementResponse] = None
    settlement_error: Optional[str] = None


class CancellationResponse(StrictModel):
    session: SessionResponse
    refund_amount: int
    tutor_payout: int
    hours_before_session: int
    refund_status: Literal["succeeded", "failed", "not_required"]
    refund_id: Optional[str] = None
    refund_error: Optional[str] = None
    payout_error: Optional[str] = None
    meeting_teardown: str
    policy_basis: str

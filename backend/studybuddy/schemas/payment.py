# backend/studybuddy/schemas/payment.py
"""Payment, transfer and webhook DTOs."""

from typing import Any, Dict, List, Optional

from pydantic import Field

from ._strict_base import StrictModel, StrictRequestModel


class AuthorizationResponse(StrictModel):
    intent_id: str
    client_secret: Optional[str] = None
    transaction_id: str
    payment_type: str = Field(..., description="connect_direct or two_stage")
    amount: int = Field(..., description="Authorized amount in cents")
    platform_fee: int = Field(..., description="Application fee in cents")
    reused: bool = Field(False, description="True when an existing authorization was returned")


class TransferExecuteRequest(StrictRequestModel):
    retry_failed: bool = Field(
        False, description="Also retry rows previously marked failed (operator action)"
    )


class TransferBatchResponse(StrictModel):
    tutor_id: str
    attempted: int
    completed: List[str]
    failed: List[Dict[str, Any]]
    retry_pending: List[Dict[str, Any]]


class WebhookResponse(StrictModel):
    success: bool
    event_type: str
    handled: bool
    details: Dict[str, Any] = Field(default_factory=dict)

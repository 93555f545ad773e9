"""Request and response schemas for the v1 API."""

from .availability import AvailabilityResponse, BookingSlotResponse
from .payment import (
    AuthorizationResponse,
    TransferBatchResponse,
    TransferExecuteRequest,
    WebhookResponse,
)
from .session import (
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

__all__ = [
    "AuthorizationResponse",
    "AuthorizeRequest",
    "AvailabilityResponse",
    "BookingCreate",
    "BookingResponse",
    "BookingSlotResponse",
    "CancellationResponse",
    "CancelRequest",
    "ConfirmationResponse",
    "ConfirmRequest",
    "SessionResponse",
    "SettlementResponse",
    "TransferBatchResponse",
    "TransferExecuteRequest",
    "WebhookResponse",
]

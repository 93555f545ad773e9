# backend/studybuddy/core/exceptions.py
"""
Domain-specific exceptions for the StudyBuddy booking core.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        """Convert to an HTTPException carrying the structured error body."""
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class UnauthorizedException(DomainException):
    """Raised when the caller is not authenticated."""

    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenException(DomainException):
    """Raised when the caller may not act on a resource."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code or "NOT_FOUND", details)


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Specific business exceptions


class LeadTimeViolationException(ValidationException):
    """Raised when a session starts sooner than the minimum booking lead time."""

    def __init__(self, required_hours: int, provided_hours: float):
        super().__init__(
            message=f"Sessions must be booked at least {required_hours} hours in advance",
            code="LEAD_TIME_VIOLATION",
            details={
                "required_hours": required_hours,
                "provided_hours": round(provided_hours, 2),
            },
        )


class InvalidAmountException(ValidationException):
    """Raised when a payment amount is not a positive whole number of minor units."""

    def __init__(self, value: Any, reason: str = "Amount must be a positive integer of cents"):
        super().__init__(
            message=reason,
            code="INVALID_AMOUNT",
            details={"value": repr(value)},
        )


class BookingConflictException(ConflictException):
    """Raised when a booking conflicts with existing bookings."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message or "This time slot conflicts with an existing session",
            code="BOOKING_CONFLICT",
            details=details or {},
        )


class WeeklySessionLimitException(BusinessRuleException):
    """Raised when a tutor has reached their weekly session cap."""

    def __init__(self, limit: int, booked: int):
        super().__init__(
            message=f"Tutor has reached the limit of {limit} sessions for this week",
            code="WEEKLY_SESSION_LIMIT",
            details={"limit": limit, "booked": booked},
        )


class TutorPayoutNotReadyException(BusinessRuleException):
    """Raised when transfers are requested for a tutor without a usable payout account."""

    def __init__(self, tutor_id: str, reason: str):
        super().__init__(
            message=f"Tutor payout account is not ready: {reason}",
            code="TUTOR_PAYOUT_NOT_READY",
            details={"tutor_id": tutor_id},
        )


class PaymentProcessorException(ServiceException):
    """Raised when a call to the payment processor fails."""

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        processor_code: Optional[str] = None,
        transient: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        payload = dict(details or {})
        payload.update({"operation": operation, "processor_code": processor_code})
        super().__init__(message=message, code="PAYMENT_PROCESSOR_ERROR", details=payload)
        self.operation = operation
        self.processor_code = processor_code
        self.transient = transient


class PaymentAuthorizationFailedException(ServiceException):
    """Raised when a payment authorization could not be created."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code="PAYMENT_AUTHORIZATION_FAILED",
            details=details or {},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """

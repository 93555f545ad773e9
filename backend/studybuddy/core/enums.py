# backend/studybuddy/core/enums.py
"""
Core enums for the StudyBuddy booking core.

Values are persisted as plain strings, so members subclass ``str``.
"""

from enum import Enum


class RoleName(str, Enum):
    """Roles a principal can hold."""

    ADMIN = "admin"
    TUTOR = "tutor"
    STUDENT = "student"


class SessionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def open_statuses(cls) -> tuple["SessionStatus", ...]:
        """Statuses from which a session may still complete or be cancelled."""
        return (cls.PENDING, cls.CONFIRMED)


class SessionType(str, Enum):
    VIRTUAL = "virtual"
    IN_PERSON = "in_person"


class SessionPaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUND_FAILED = "refund_failed"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def live_statuses(cls) -> tuple["TransactionStatus", ...]:
        return (cls.PENDING, cls.PROCESSING)


class PaymentType(str, Enum):
    CONNECT_DIRECT = "connect_direct"
    TWO_STAGE = "two_stage"


class TransferStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ConfirmationRole(str, Enum):
    TUTOR = "tutor"
    STUDENT = "student"

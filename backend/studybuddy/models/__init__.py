"""
Database models for the StudyBuddy booking core.

- TutoringSession: the scheduled engagement and its lifecycle flags
- PaymentTransaction / PendingTransfer: the payment ledger
- TutorProfile / TutorAvailability: tutor rate, payout account and schedule
"""

from .payment import PaymentTransaction, PendingTransfer
from .tutor import TutorAvailability, TutorProfile
from .tutoring_session import TutoringSession

__all__ = [
    "PaymentTransaction",
    "PendingTransfer",
    "TutorAvailability",
    "TutorProfile",
    "TutoringSession",
]

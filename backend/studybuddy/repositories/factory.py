# backend/studybuddy/repositories/factory.py
"""
Repository Factory for the StudyBuddy booking core

Provides a centralized way to create repository instances,
ensuring consistent initialization across services.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

if TYPE_CHECKING:
    from .payment_repository import PaymentRepository, TransferRepository
    from .session_repository import SessionRepository
    from .tutor_repository import AvailabilityRepository, TutorProfileRepository


class RepositoryFactory:
    """
    Factory class for creating repository instances.

    Usage:
        session_repo = RepositoryFactory.create_session_repository(db)
    """

    @staticmethod
    def create_session_repository(db: Session) -> "SessionRepository":
        from .session_repository import SessionRepository

        return SessionRepository(db)

    @staticmethod
    def create_payment_repository(db: Session) -> "PaymentRepository":
        from .payment_repository import PaymentRepository

        return PaymentRepository(db)

    @staticmethod
    def create_transfer_repository(db: Session) -> "TransferRepository":
        from .payment_repository import TransferRepository

        return TransferRepository(db)

    @staticmethod
    def create_tutor_profile_repository(db: Session) -> "TutorProfileRepository":
        from .tutor_repository import TutorProfileRepository

        return TutorProfileRepository(db)

    @staticmethod
    def create_availability_repository(db: Session) -> "AvailabilityRepository":
        from .tutor_repository import AvailabilityRepository

        return AvailabilityRepository(db)

# backend/studybuddy/repositories/__init__.py
"""
Repository Pattern Implementation for the StudyBuddy booking core

Key Components:
- BaseRepository: generic CRUD plus conditional (compare-and-set) updates
- RepositoryFactory: factory for creating repository instances
- SessionRepository: session lifecycle transitions
- PaymentRepository / TransferRepository: the payment ledger
- TutorProfileRepository / AvailabilityRepository: tutor-side reads

Usage:
    from studybuddy.repositories import RepositoryFactory

    sessions = RepositoryFactory.create_session_repository(db)
"""

from .base_repository import BaseRepository, IRepository
from .factory import RepositoryFactory
from .payment_repository import PaymentRepository, TransferRepository
from .session_repository import SessionRepository
from .tutor_repository import AvailabilityRepository, TutorProfileRepository

__all__ = [
    "AvailabilityRepository",
    "BaseRepository",
    "IRepository",
    "PaymentRepository",
    "RepositoryFactory",
    "SessionRepository",
    "TransferRepository",
    "TutorProfileRepository",
]

# backend/studybuddy/services/confirmation_service.py
"""
Dual Confirmation State Machine.

Tutor and student confirm independently. The session completes exactly once,
when the second confirmation lands, and settlement is triggered from there.
A settlement failure does not undo completion; it is reported on the result.
"""

from dataclasses import dataclass
from datetime import timedelta
import logging
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import ConfirmationRole, SessionStatus
from ..core.exceptions import (
    ConflictException,
    DomainException,
    ForbiddenException,
    NotFoundException,
    ValidationException,
)
from ..models.tutoring_session import TutoringSession
from ..repositories.factory import RepositoryFactory
from ..utils.time import as_utc, utcnow
from .base import BaseService
from .notification_service import SESSION_COMPLETED, NotificationService
from .settlement_service import SettlementResult, SettlementService

logger = logging.getLogger(__name__)


@dataclass
class ConfirmationResult:
    session: TutoringSession
    both_confirmed: bool
    settlement: Optional[SettlementResult] = None
    settlement_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": self.session.to_dict(),
            "both_confirmed": self.both_confirmed,
            "settlement": self.settlement.to_dict() if self.settlement else None,
            "settlement_error": self.settlement_error,
        }


class ConfirmationService(BaseService):
    def __init__(
        self,
        db: Session,
        settlement_service: Optional[SettlementService] = None,
        notification_service: Optional[NotificationService] = None,
    ):
        super().__init__(db)
        self.settlement_service = settlement_service or SettlementService(db)
        self.notification_service = notification_service or NotificationService()
        self.session_repository = RepositoryFactory.create_session_repository(db)

    @BaseService.measure_operation("confirm")
    def confirm(
        self, session_id: str, role: Union[ConfirmationRole, str], caller_id: str
    ) -> ConfirmationResult:
        """
        Record the caller's confirmation for their side of the session.

        Raises:
            NotFoundException: session does not exist
            ForbiddenException: caller is not the party for ``role``
            ConflictException: session was cancelled
        """
        role = self._parse_role(role)
        session = self._get_session(session_id)

        expected = session.tutor_id if role == ConfirmationRole.TUTOR else session.student_id
        if caller_id != expected:
            raise ForbiddenException(
                f"Only the session's {role.value} can confirm as {role.value}",
                code="UNAUTHORIZED",
                details={"session_id": session_id, "role": role.value},
            )
        return self._confirm_roles(session, [role])

    @BaseService.measure_operation("auto_confirm")
    def auto_confirm(self, session_id: str) -> ConfirmationResult:
        """Confirm both sides on behalf of the system once the confirmation window has passed."""
        session = self._get_session(session_id)
        if session.end_time is None or utcnow() - timedelta(
            hours=settings.auto_confirm_after_hours
        ) < as_utc(session.end_time):
            raise ConflictException(
                "Session is still inside its confirmation window",
                code="CONFIRMATION_WINDOW_OPEN",
                details={"session_id": session_id},
            )
        self.logger.info(f"Auto-confirming session {session_id}")
        return self._confirm_roles(session, [ConfirmationRole.TUTOR, ConfirmationRole.STUDENT])

    def auto_confirm_due(self, limit: int = 100) -> List[str]:
        """Auto-confirm every open session past the window; returns the ids completed."""
        cutoff = utcnow() - timedelta(hours=settings.auto_confirm_after_hours)
        completed = []
        for session in self.session_repository.find_sessions_awaiting_auto_confirm(cutoff, limit):
            try:
                result = self.auto_confirm(session.id)
            except DomainException as e:
                self.logger.warning(f"Auto-confirm of {session.id} skipped: {e.message}")
                continue
            if result.both_confirmed:
                completed.append(session.id)
        return completed

    def _confirm_roles(
        self, session: TutoringSession, roles: List[ConfirmationRole]
    ) -> ConfirmationResult:
        session_id = session.id
        if session.status == SessionStatus.CANCELLED.value:
            raise ConflictException(
                "Cancelled sessions cannot be confirmed",
                code="SESSION_CANCELLED",
                details={"session_id": session_id},
            )

        with self.transaction():
            for role in roles:
                if self.session_repository.set_confirmation_flag(session_id, role):
                    self.logger.info(f"Session {session_id}: {role.value} confirmed")
            both_confirmed = self.session_repository.mark_completed_if_both_confirmed(
                session_id, utcnow()
            )

        session = self._get_session(session_id)
        if not both_confirmed:
            return ConfirmationResult(session=session, both_confirmed=False)

        self.logger.info(f"Session {session_id} completed")
        settlement: Optional[SettlementResult] = None
        settlement_error: Optional[str] = None
        try:
            settlement = self.settlement_service.settle(session_id)
        except Exception as e:
            # Completion stands; settlement is retried by the deferred-settlement job
            settlement_error = str(getattr(e, "message", None) or e)
            self.logger.warning(
                f"Session {session_id} completed but settlement failed: {settlement_error}"
            )

        self.notification_service.publish(
            SESSION_COMPLETED,
            [session.tutor_id, session.student_id],
            {"session_id": session_id},
        )
        return ConfirmationResult(
            session=self._get_session(session_id),
            both_confirmed=True,
            settlement=settlement,
            settlement_error=settlement_error,
        )

    def _get_session(self, session_id: str) -> TutoringSession:
        session = self.session_repository.get_by_id(session_id)
        if not session:
            raise NotFoundException("Session not found", details={"session_id": session_id})
        return session

    @staticmethod
    def _parse_role(role: Union[ConfirmationRole, str]) -> ConfirmationRole:
        try:
            return ConfirmationRole(role)
        except ValueError:
            raise ValidationException(
                f"Unknown confirmation role: {role}", code="INVALID_ROLE"
            )

# backend/studybuddy/repositories/session_repository.py
"""
Repository for tutoring sessions.

Every lifecycle transition is a single conditional UPDATE so that concurrent
callers (tutor app, student app, processor webhook, operator tools) cannot
apply the same transition twice.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, false, true
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import ConfirmationRole, SessionStatus
from ..core.exceptions import RepositoryException
from ..models.payment import PendingTransfer
from ..models.tutoring_session import TutoringSession
from .base_repository import BaseRepository

_OPEN_STATUSES = [s.value for s in SessionStatus.open_statuses()]


class SessionRepository(BaseRepository[TutoringSession]):
    """Data access for TutoringSession rows."""

    def __init__(self, db: Session):
        super().__init__(db, TutoringSession)

    def find_tutor_sessions_between(
        self,
        tutor_id: str,
        start: datetime,
        end: datetime,
        *,
        exclude_cancelled: bool = True,
    ) -> List[TutoringSession]:
        """Sessions of a tutor overlapping the half-open window ``[start, end)``."""
        query = self._build_query().filter(
            TutoringSession.tutor_id == tutor_id,
            TutoringSession.start_time < end,
            TutoringSession.end_time > start,
        )
        if exclude_cancelled:
            query = query.filter(TutoringSession.status != SessionStatus.CANCELLED.value)
        return self._execute_query(query.order_by(TutoringSession.start_time))

    def count_tutor_sessions_between(self, tutor_id: str, start: datetime, end: datetime) -> int:
        """Non-cancelled sessions of a tutor starting within ``[start, end)``."""
        try:
            return (
                self._build_query()
                .filter(
                    TutoringSession.tutor_id == tutor_id,
                    TutoringSession.start_time >= start,
                    TutoringSession.start_time < end,
                    TutoringSession.status != SessionStatus.CANCELLED.value,
                )
                .count()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error counting sessions for tutor {tutor_id}: {str(e)}")
            raise RepositoryException(f"Failed to count sessions: {str(e)}")

    def set_confirmation_flag(self, session_id: str, role: ConfirmationRole) -> bool:
        """
        Set the tutor or student confirmation flag if it is not already set.

        Returns True when this call flipped the flag.
        """
        column = (
            TutoringSession.tutor_confirmed
            if role == ConfirmationRole.TUTOR
            else TutoringSession.student_confirmed
        )
        matched = self.conditional_update(
            session_id,
            [column == false(), TutoringSession.status.in_(_OPEN_STATUSES)],
            {column.key: True},
        )
        return matched == 1

    def mark_completed_if_both_confirmed(self, session_id: str, completed_at: datetime) -> bool:
        """
        Complete the session exactly once.

        Guarded by ``completion_date IS NULL``; only the caller whose update
        matched a row returns True.
        """
        matched = self.conditional_update(
            session_id,
            [
                TutoringSession.completion_date.is_(None),
                TutoringSession.status.in_(_OPEN_STATUSES),
                TutoringSession.tutor_confirmed == true(),
                TutoringSession.student_confirmed == true(),
            ],
            {
                "completion_date": completed_at,
                "status": SessionStatus.COMPLETED.value,
            },
        )
        return matched == 1

    def mark_cancelled(
        self,
        session_id: str,
        *,
        cancelled_at: datetime,
        cancelled_by: str,
        reason: Optional[str],
        hours_before_session: int,
        refund_amount: int,
    ) -> bool:
        """Cancel an open, not-completed session. Returns False if it was no longer open."""
        matched = self.conditional_update(
            session_id,
            [
                TutoringSession.status.in_(_OPEN_STATUSES),
                TutoringSession.completion_date.is_(None),
            ],
            {
                "status": SessionStatus.CANCELLED.value,
                "cancelled_at": cancelled_at,
                "cancelled_by": cancelled_by,
                "cancellation_reason": reason,
                "hours_before_session": hours_before_session,
                "refund_amount": refund_amount,
            },
        )
        return matched == 1

    def find_sessions_awaiting_auto_confirm(
        self, ended_before: datetime, limit: int = 100
    ) -> List[TutoringSession]:
        """Open sessions whose end time is before ``ended_before``."""
        query = (
            self._build_query()
            .filter(
                TutoringSession.status.in_(_OPEN_STATUSES),
                TutoringSession.completion_date.is_(None),
                TutoringSession.end_time < ended_before,
            )
            .order_by(TutoringSession.end_time)
            .limit(limit)
        )
        return self._execute_query(query)

    def find_completed_without_settlement(self, limit: int = 100) -> List[TutoringSession]:
        """Completed sessions that have no settled PendingTransfer yet."""
        settled = (
            self.db.query(PendingTransfer.session_id)
            .filter(
                and_(
                    PendingTransfer.session_id == TutoringSession.id,
                    PendingTransfer.settled_at.isnot(None),
                )
            )
            .exists()
        )
        query = (
            self._build_query()
            .filter(TutoringSession.status == SessionStatus.COMPLETED.value, ~settled)
            .order_by(TutoringSession.completion_date)
            .limit(limit)
        )
        return self._execute_query(query)

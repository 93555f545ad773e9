# backend/studybuddy/models/tutoring_session.py
"""
Tutoring session model.

A session is a scheduled engagement between one tutor and one student. It is
created in ``pending`` status at booking time, moves forward to ``completed``
once both parties confirm, or to ``cancelled``; it is never deleted.

Lifecycle writes that race (confirmation, completion, cancellation) go through
conditional updates in ``SessionRepository``; the helpers on this class only
read state.
"""

from datetime import datetime
import logging
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.sql import func
import ulid

from ..core.enums import SessionPaymentStatus, SessionStatus, SessionType
from ..database import Base
from ..utils.time import as_utc

logger = logging.getLogger(__name__)


class TutoringSession(Base):
    """A booked tutoring session and its confirmation/cancellation state."""

    __tablename__ = "sessions"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    tutor_id = Column(String(26), nullable=False, index=True)
    student_id = Column(String(26), nullable=False, index=True)
    course_id = Column(String(64), nullable=True)

    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)

    status = Column(String(20), nullable=False, default=SessionStatus.PENDING.value)
    session_type = Column(String(20), nullable=False, default=SessionType.VIRTUAL.value)
    location = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    meeting_id = Column(String(64), nullable=True)
    meeting_join_url = Column(Text, nullable=True)

    # Dual confirmation
    tutor_confirmed = Column(Boolean, nullable=False, default=False)
    student_confirmed = Column(Boolean, nullable=False, default=False)
    completion_date = Column(DateTime(timezone=True), nullable=True)

    # Cancellation
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(26), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    hours_before_session = Column(Integer, nullable=True)
    refund_amount = Column(Integer, nullable=True, comment="Refund in cents")
    refund_id = Column(String(255), nullable=True)
    refund_error = Column(Text, nullable=True)

    payment_status = Column(
        String(30), nullable=False, default=SessionPaymentStatus.UNPAID.value
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_sessions_time_order"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'completed', 'cancelled')",
            name="ck_sessions_status",
        ),
        CheckConstraint(
            "session_type IN ('virtual', 'in_person')", name="ck_sessions_session_type"
        ),
        CheckConstraint(
            "NOT (status = 'completed' AND cancelled_at IS NOT NULL)",
            name="ck_sessions_completed_not_cancelled",
        ),
        CheckConstraint(
            "refund_amount IS NULL OR refund_amount >= 0", name="ck_sessions_refund_non_negative"
        ),
        Index("ix_sessions_tutor_start", "tutor_id", "start_time"),
    )

    def __repr__(self) -> str:
        return (
            f"<TutoringSession {self.id}: tutor={self.tutor_id}, student={self.student_id}, "
            f"start={self.start_time}, status={self.status}>"
        )

    @property
    def duration_minutes(self) -> int:
        delta = as_utc(self.end_time) - as_utc(self.start_time)
        return int(delta.total_seconds() // 60)

    @property
    def both_confirmed(self) -> bool:
        return bool(self.tutor_confirmed and self.student_confirmed)

    @property
    def is_cancellable(self) -> bool:
        return self.status in (s.value for s in SessionStatus.open_statuses())

    def role_of(self, user_id: str) -> Optional[str]:
        """Return ``"tutor"`` or ``"student"`` for a participant, else None."""
        if user_id == self.tutor_id:
            return "tutor"
        if user_id == self.student_id:
            return "student"
        return None

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open interval overlap with ``[start, end)``."""
        return as_utc(self.start_time) < as_utc(end) and as_utc(start) < as_utc(self.end_time)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""

        def _iso(value: Optional[datetime]) -> Optional[str]:
            return as_utc(value).isoformat() if value else None

        return {
            "id": self.id,
            "tutor_id": self.tutor_id,
            "student_id": self.student_id,
            "course_id": self.course_id,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "status": self.status,
            "session_type": self.session_type,
            "location": self.location,
            "notes": self.notes,
            "meeting_join_url": self.meeting_join_url,
            "tutor_confirmed": bool(self.tutor_confirmed),
            "student_confirmed": bool(self.student_confirmed),
            "completion_date": _iso(self.completion_date),
            "cancelled_at": _iso(self.cancelled_at),
            "cancelled_by": self.cancelled_by,
            "cancellation_reason": self.cancellation_reason,
            "hours_before_session": self.hours_before_session,
            "refund_amount": self.refund_amount,
            "payment_status": self.payment_status,
            "created_at": _iso(self.created_at),
        }

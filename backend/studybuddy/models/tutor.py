"""
Tutor-side records the booking core reads.

TutorProfile holds the rate and payout-account facts owned by the profile
service; TutorAvailability is the recurring weekly schedule.
"""

from datetime import datetime, time
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String, Time, func
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from ..database import Base


class TutorProfile(Base):
    """Rate and Stripe Connect payout status for a tutor."""

    __tablename__ = "tutor_profiles"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    user_id: Mapped[str] = mapped_column(String(26), unique=True, nullable=False)
    hourly_rate_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    stripe_account_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    onboarding_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    max_weekly_sessions: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    timezone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("hourly_rate_cents > 0", name="ck_tutor_profiles_rate_positive"),
    )

    @property
    def payout_ready(self) -> bool:
        return bool(self.stripe_account_id and self.onboarding_complete)

    def __repr__(self) -> str:
        return f"<TutorProfile(user_id={self.user_id}, onboarded={self.onboarding_complete})>"


class TutorAvailability(Base):
    """One open time range on a weekday (0=Monday) in the tutor's local time."""

    __tablename__ = "tutor_availability"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    tutor_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    weekday: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)

    __table_args__ = (
        CheckConstraint("weekday >= 0 AND weekday <= 6", name="ck_tutor_availability_weekday"),
        CheckConstraint("end_time > start_time", name="ck_tutor_availability_time_order"),
    )

    def __repr__(self) -> str:
        return (
            f"<TutorAvailability(tutor_id={self.tutor_id}, weekday={self.weekday}, "
            f"{self.start_time}-{self.end_time})>"
        )

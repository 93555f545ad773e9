"""
Payment ledger models.

PaymentTransaction mirrors one processor payment intent for a session.
PendingTransfer is the payout obligation to a tutor computed at settlement.
Amounts are integer cents throughout.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column
import ulid

from ..core.enums import TransactionStatus, TransferStatus
from ..database import Base

_LIVE_TRANSACTION = text("status IN ('pending', 'processing')")


class PaymentTransaction(Base):
    """Local mirror of a Stripe PaymentIntent for a session."""

    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    session_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    student_id: Mapped[str] = mapped_column(String(26), nullable=False)
    tutor_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, comment="Amount in cents")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.PENDING.value
    )
    stripe_payment_intent_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    stripe_charge_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    platform_fee: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Application fee in cents"
    )
    payment_type: Mapped[str] = mapped_column(String(20), nullable=False)
    requires_transfer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    transfer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_transactions_amount_positive"),
        CheckConstraint("platform_fee >= 0", name="ck_payment_transactions_fee_non_negative"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_payment_transactions_status",
        ),
        CheckConstraint(
            "payment_type IN ('connect_direct', 'two_stage')",
            name="ck_payment_transactions_payment_type",
        ),
        # One live authorization per session
        Index(
            "uq_payment_transactions_live_session",
            "session_id",
            unique=True,
            postgresql_where=_LIVE_TRANSACTION,
            sqlite_where=_LIVE_TRANSACTION,
        ),
    )

    @property
    def is_live(self) -> bool:
        return self.status in (s.value for s in TransactionStatus.live_statuses())

    def __repr__(self) -> str:
        return (
            f"<PaymentTransaction(session_id={self.session_id}, "
            f"pi={self.stripe_payment_intent_id}, amount={self.amount}, status={self.status})>"
        )


class PendingTransfer(Base):
    """
    Tutor payout obligation for one session.

    A two-stage authorization writes an unsettled placeholder (``settled_at`` is
    NULL). Settlement fills in the fee split and ``settled_at``; only settled
    rows are executed.
    """

    __tablename__ = "pending_transfers"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    session_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    tutor_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    student_id: Mapped[str] = mapped_column(String(26), nullable=False)
    payment_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(26), ForeignKey("payment_transactions.id", ondelete="SET NULL"), nullable=True
    )
    gross_amount: Mapped[int] = mapped_column(Integer, nullable=False, comment="Charged cents")
    amount: Mapped[int] = mapped_column(Integer, nullable=False, comment="Tutor net in cents")
    platform_fee: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processor_fee: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransferStatus.PENDING.value
    )
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    stripe_transfer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_pending_transfers_amount_non_negative"),
        CheckConstraint("platform_fee >= 0", name="ck_pending_transfers_platform_fee"),
        CheckConstraint("processor_fee >= 0", name="ck_pending_transfers_processor_fee"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')", name="ck_pending_transfers_status"
        ),
    )

    @property
    def is_settled(self) -> bool:
        return self.settled_at is not None

    def __repr__(self) -> str:
        return (
            f"<PendingTransfer(session_id={self.session_id}, tutor_id={self.tutor_id}, "
            f"amount={self.amount}, status={self.status})>"
        )

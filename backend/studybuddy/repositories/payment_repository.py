"""
Repository for the payment ledger (PaymentTransaction and PendingTransfer).
"""

from datetime import datetime
import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import TransactionStatus, TransferStatus
from ..core.exceptions import RepositoryException
from ..models.payment import PaymentTransaction, PendingTransfer
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)

_LIVE = [s.value for s in TransactionStatus.live_statuses()]


class PaymentRepository(BaseRepository[PaymentTransaction]):
    """Data access for PaymentTransaction rows."""

    def __init__(self, db: Session):
        super().__init__(db, PaymentTransaction)

    def get_live_transaction(self, session_id: str) -> Optional[PaymentTransaction]:
        """The pending/processing transaction for a session, if any."""
        query = (
            self._build_query()
            .filter(
                PaymentTransaction.session_id == session_id,
                PaymentTransaction.status.in_(_LIVE),
            )
            .order_by(PaymentTransaction.created_at.desc())
        )
        return self._execute_first(query)

    def get_completed_transaction(self, session_id: str) -> Optional[PaymentTransaction]:
        query = (
            self._build_query()
            .filter(
                PaymentTransaction.session_id == session_id,
                PaymentTransaction.status == TransactionStatus.COMPLETED.value,
            )
            .order_by(PaymentTransaction.created_at.desc())
        )
        return self._execute_first(query)

    def get_by_payment_intent_id(self, payment_intent_id: str) -> Optional[PaymentTransaction]:
        try:
            return (
                self._build_query()
                .filter(PaymentTransaction.stripe_payment_intent_id == payment_intent_id)
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting transaction for PI {payment_intent_id}: {str(e)}")
            raise RepositoryException(f"Failed to get payment transaction: {str(e)}")

    def mark_completed(
        self, transaction_id: str, charge_id: Optional[str] = None, *, allow_failed: bool = False
    ) -> bool:
        """
        Move a live transaction to ``completed``. Returns True on transition.

        A ``failed`` row is only reopened with ``allow_failed``: the caller must
        already know what happens to money that arrived after the row was
        given up (kept for an active session, refunded for a cancelled one).
        """
        allowed = list(_LIVE)
        if allow_failed:
            allowed.append(TransactionStatus.FAILED.value)
        values = {"status": TransactionStatus.COMPLETED.value, "failure_reason": None}
        if charge_id:
            values["stripe_charge_id"] = charge_id
        matched = self.conditional_update(
            transaction_id,
            [PaymentTransaction.status.in_(allowed)],
            values,
        )
        return matched == 1

    def mark_failed(self, transaction_id: str, reason: Optional[str]) -> bool:
        """Move a live transaction to ``failed``; completed transactions are left alone."""
        matched = self.conditional_update(
            transaction_id,
            [PaymentTransaction.status.in_(_LIVE)],
            {"status": TransactionStatus.FAILED.value, "failure_reason": reason},
        )
        return matched == 1

    def set_charge_id(self, transaction_id: str, charge_id: str) -> bool:
        matched = self.conditional_update(
            transaction_id,
            [PaymentTransaction.stripe_charge_id.is_(None)],
            {"stripe_charge_id": charge_id},
        )
        return matched == 1

    def set_transfer_id(self, transaction_id: str, transfer_id: str) -> bool:
        """Write ``transfer_id`` once; later writes are ignored."""
        matched = self.conditional_update(
            transaction_id,
            [PaymentTransaction.transfer_id.is_(None)],
            {"transfer_id": transfer_id},
        )
        return matched == 1


class TransferRepository(BaseRepository[PendingTransfer]):
    """Data access for PendingTransfer rows."""

    def __init__(self, db: Session):
        super().__init__(db, PendingTransfer)

    def get_by_session_id(self, session_id: str) -> Optional[PendingTransfer]:
        return self._execute_first(
            self._build_query().filter(PendingTransfer.session_id == session_id)
        )

    def settle_placeholder(self, transfer_id: str, values: dict) -> bool:
        """Turn an unsettled placeholder into a settled obligation, once."""
        matched = self.conditional_update(
            transfer_id, [PendingTransfer.settled_at.is_(None)], values
        )
        return matched == 1

    def find_executable_for_tutor(
        self, tutor_id: str, *, include_failed: bool = False
    ) -> List[PendingTransfer]:
        """Settled rows for a tutor that still need a processor transfer."""
        statuses = [TransferStatus.PENDING.value]
        if include_failed:
            statuses.append(TransferStatus.FAILED.value)
        query = (
            self._build_query()
            .filter(
                PendingTransfer.tutor_id == tutor_id,
                PendingTransfer.status.in_(statuses),
                PendingTransfer.settled_at.isnot(None),
            )
            .order_by(PendingTransfer.created_at)
        )
        return self._execute_query(query)

    def find_tutors_with_executable_transfers(self) -> List[str]:
        try:
            rows = (
                self.db.query(PendingTransfer.tutor_id)
                .filter(
                    PendingTransfer.status == TransferStatus.PENDING.value,
                    PendingTransfer.settled_at.isnot(None),
                )
                .distinct()
                .all()
            )
            return [row[0] for row in rows]
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing tutors with pending transfers: {str(e)}")
            raise RepositoryException(f"Failed to list pending transfers: {str(e)}")

    def mark_completed(
        self,
        transfer_id: str,
        *,
        stripe_transfer_id: Optional[str],
        processed_at: datetime,
        processed_by: str,
    ) -> bool:
        matched = self.conditional_update(
            transfer_id,
            [PendingTransfer.status != TransferStatus.COMPLETED.value],
            {
                "status": TransferStatus.COMPLETED.value,
                "stripe_transfer_id": stripe_transfer_id,
                "processed_at": processed_at,
                "processed_by": processed_by,
                "error_message": None,
            },
        )
        return matched == 1

    def record_failure(self, transfer_id: str, *, error: str, terminal: bool) -> bool:
        """
        Record a failed execution attempt.

        ``terminal`` failures flip the row to ``failed`` for operator review;
        otherwise the row stays ``pending`` so the next run retries it.
        """
        values = {
            "error_message": error,
            "attempt_count": PendingTransfer.attempt_count + 1,
        }
        if terminal:
            values["status"] = TransferStatus.FAILED.value
        matched = self.conditional_update(
            transfer_id,
            [PendingTransfer.status != TransferStatus.COMPLETED.value],
            values,
        )
        return matched == 1

    def delete_unsettled(self, transfer_id: str) -> bool:
        try:
            deleted = (
                self._build_query()
                .filter(PendingTransfer.id == transfer_id, PendingTransfer.settled_at.is_(None))
                .delete(synchronize_session="fetch")
            )
            return deleted == 1
        except SQLAlchemyError as e:
            self.logger.error(f"Error deleting placeholder {transfer_id}: {str(e)}")
            self.db.rollback()
            raise RepositoryException(f"Failed to delete pending transfer: {str(e)}")

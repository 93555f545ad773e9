"""Cancellation refund policy evaluation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
import math

from ..core.money import percent_of
from ..utils.time import as_utc

FULL = Decimal("1")
HALF = Decimal("0.5")
NONE = Decimal("0")


@dataclass(frozen=True)
class RefundDecision:
    cancelled_by_role: str
    hours_before_session: int
    refund_percent: Decimal
    refund_amount: int
    tutor_payout: int
    policy_basis: str

    def to_payload(self) -> dict[str, object]:
        return {
            "cancelled_by_role": self.cancelled_by_role,
            "hours_before_session": self.hours_before_session,
            "refund_percent": str(self.refund_percent),
            "refund_amount": int(self.refund_amount),
            "tutor_payout": int(self.tutor_payout),
            "policy_basis": self.policy_basis,
        }


def hours_before(start_time: datetime, now: datetime) -> int:
    """Whole hours from ``now`` until the session starts, never negative."""
    seconds = (as_utc(start_time) - as_utc(now)).total_seconds()
    return max(0, math.floor(seconds / 3600))


class RefundPolicy:
    """Splits a paid amount between student refund and tutor payout."""

    def evaluate(self, cancelled_by_role: str, hours: int, paid_amount: int) -> RefundDecision:
        if cancelled_by_role == "tutor":
            percent = FULL
            basis = "Tutor cancelled: full refund"
        elif hours >= 24:
            percent = FULL
            basis = ">=24 hours before session: full refund"
        elif hours >= 2:
            percent = HALF
            basis = "2-24 hours before session: 50% refund, 50% to tutor"
        else:
            percent = NONE
            basis = "<2 hours before session: no refund, full payout to tutor"

        amount = max(int(paid_amount or 0), 0)
        refund = percent_of(amount, percent) if amount else 0
        return RefundDecision(
            cancelled_by_role=cancelled_by_role,
            hours_before_session=hours,
            refund_percent=percent,
            refund_amount=refund,
            tutor_payout=amount - refund,
            policy_basis=basis,
        )

"""
Fee model for settlement.

Every step is computed in integer cents with Decimal arithmetic and rounded
half-up on its own, matching how the processor rounds its fee:

    processor_fee = round(amount * processor_fee_rate + fixed_fee)
    platform_fee  = round(amount * platform_fee_rate)
    tutor_net     = amount - processor_fee - platform_fee
"""

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from ..core.config import settings
from ..core.money import percent_of, round_half_up


@dataclass(frozen=True)
class FeeBreakdown:
    gross_amount: int
    platform_fee: int
    processor_fee: int
    tutor_net: int

    @classmethod
    def compute(
        cls,
        amount_cents: int,
        *,
        platform_fee_rate: Optional[Decimal] = None,
        processor_fee_rate: Optional[Decimal] = None,
        processor_fee_fixed_cents: Optional[int] = None,
    ) -> "FeeBreakdown":
        platform_rate = (
            settings.platform_fee_rate if platform_fee_rate is None else Decimal(str(platform_fee_rate))
        )
        processor_rate = (
            settings.processor_fee_rate
            if processor_fee_rate is None
            else Decimal(str(processor_fee_rate))
        )
        fixed = (
            settings.processor_fee_fixed_cents
            if processor_fee_fixed_cents is None
            else processor_fee_fixed_cents
        )

        if amount_cents <= 0:
            return cls(gross_amount=max(amount_cents, 0), platform_fee=0, processor_fee=0, tutor_net=0)

        processor_fee = round_half_up(Decimal(amount_cents) * processor_rate + Decimal(fixed))
        platform_fee = percent_of(amount_cents, platform_rate)
        tutor_net = max(amount_cents - processor_fee - platform_fee, 0)
        return cls(
            gross_amount=amount_cents,
            platform_fee=platform_fee,
            processor_fee=processor_fee,
            tutor_net=tutor_net,
        )

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


def application_fee_for(amount_cents: int, platform_fee_rate: Optional[Decimal] = None) -> int:
    """Application fee charged on a direct (destination) authorization."""
    rate = settings.platform_fee_rate if platform_fee_rate is None else platform_fee_rate
    return percent_of(amount_cents, rate)

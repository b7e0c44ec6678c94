"""
Refund policy evaluation.

Two refund models are supported and selected with the ``refund_policy``
setting:

* ``tiered`` (default): full refund when the cancellation happens at least
  ``full_refund_window_hours`` before the event, a partial refund inside that
  window, nothing once the event has started.
* ``flat_fee``: a capped percentage fee is withheld, and cancellations are
  only accepted outside the full refund window.

All amounts are ``Decimal`` values quantized to cents with half-up rounding.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from ..config import Settings, get_settings
from ..utils.clock import hours_between, utcnow

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

Money = Union[Decimal, int, str]


class RefundTier(str, enum.Enum):
    """Outcome category of a refund evaluation."""
    FULL = "full"
    PARTIAL = "partial"
    FLAT_FEE = "flat_fee"
    DENIED = "denied"


@dataclass(frozen=True)
class RefundDecision:
    refund_amount: Decimal
    fee_amount: Decimal
    tier: RefundTier
    reason: Optional[str] = None

    @property
    def denied(self) -> bool:
        return self.tier is RefundTier.DENIED


def to_money(value: Money) -> Decimal:
    """Quantize a monetary value to cents."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def hours_until(event_date: datetime, now: Optional[datetime] = None) -> float:
    """Hours from ``now`` until the event starts; negative once it has started."""
    return hours_between(now or utcnow(), event_date)


def evaluate_tiered_refund(
    total_amount: Money,
    hours_until_event: float,
    full_refund_window_hours: float = 24,
    partial_refund_rate: Money = Decimal("0.5"),
) -> RefundDecision:
    total = to_money(total_amount)

    if hours_until_event < 0:
        return RefundDecision(ZERO, ZERO, RefundTier.DENIED, reason="Event has already occurred")

    if hours_until_event >= full_refund_window_hours:
        return RefundDecision(total, ZERO, RefundTier.FULL)

    refund = to_money(total * Decimal(str(partial_refund_rate)))
    return RefundDecision(refund, total - refund, RefundTier.PARTIAL)


def evaluate_flat_fee_refund(
    total_amount: Money,
    hours_until_event: float,
    full_refund_window_hours: float = 24,
    fee_rate: Money = Decimal("0.10"),
    fee_cap: Money = Decimal("50.00"),
) -> RefundDecision:
    total = to_money(total_amount)

    if hours_until_event < full_refund_window_hours:
        return RefundDecision(
            ZERO,
            ZERO,
            RefundTier.DENIED,
            reason=f"Cancellations must be made at least {full_refund_window_hours:g} hours before the event",
        )

    fee = min(to_money(total * Decimal(str(fee_rate))), to_money(fee_cap))
    return RefundDecision(total - fee, fee, RefundTier.FLAT_FEE)


@dataclass(frozen=True)
class RefundPolicy:
    """The configured refund model, evaluated against a booking amount."""

    model: str = "tiered"
    full_refund_window_hours: float = 24
    partial_refund_rate: Decimal = Decimal("0.5")
    fee_rate: Decimal = Decimal("0.10")
    fee_cap: Decimal = Decimal("50.00")

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RefundPolicy":
        settings = settings or get_settings()
        return cls(
            model=settings.refund_policy,
            full_refund_window_hours=settings.full_refund_window_hours,
            partial_refund_rate=settings.partial_refund_rate,
            fee_rate=settings.cancellation_fee_rate,
            fee_cap=settings.cancellation_fee_cap,
        )

    def evaluate(self, total_amount: Money, hours_until_event: float) -> RefundDecision:
        if self.model == "flat_fee":
            return evaluate_flat_fee_refund(
                total_amount,
                hours_until_event,
                full_refund_window_hours=self.full_refund_window_hours,
                fee_rate=self.fee_rate,
                fee_cap=self.fee_cap,
            )
        if self.model == "tiered":
            return evaluate_tiered_refund(
                total_amount,
                hours_until_event,
                full_refund_window_hours=self.full_refund_window_hours,
                partial_refund_rate=self.partial_refund_rate,
            )
        raise ValueError(f"Unknown refund policy: {self.model}")

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from .config import settings
from .models import CommissionType, RecipientKind

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class RatePolicy:
    initial_rate: Decimal
    lifetime_rate: Decimal
    customer_credit_rate: Decimal
    first_order_discount: Decimal

    @classmethod
    def from_settings(cls) -> "RatePolicy":
        return cls(
            initial_rate=settings.PARTNER_INITIAL_COMMISSION_RATE,
            lifetime_rate=settings.PARTNER_LIFETIME_COMMISSION_RATE,
            customer_credit_rate=settings.CUSTOMER_CREDIT_RATE,
            first_order_discount=settings.FIRST_ORDER_DISCOUNT_PERCENT,
        )

    def with_overrides(self, initial: Optional[Decimal] = None, lifetime: Optional[Decimal] = None) -> "RatePolicy":
        return RatePolicy(
            initial_rate=initial if initial is not None else self.initial_rate,
            lifetime_rate=lifetime if lifetime is not None else self.lifetime_rate,
            customer_credit_rate=self.customer_credit_rate,
            first_order_discount=self.first_order_discount,
        )


@dataclass(frozen=True)
class RateDecision:
    commission_rate: Decimal
    discount_percent: Decimal
    commission_type: Optional[CommissionType]
    is_initial: bool = False

    @property
    def creates_entry(self) -> bool:
        return self.commission_type is not None and self.commission_rate > ZERO

    @classmethod
    def none(cls) -> "RateDecision":
        return cls(commission_rate=ZERO, discount_percent=ZERO, commission_type=None)


def determine_rate(
    is_first_order: bool,
    referrer_kind: Optional[RecipientKind],
    policy: Optional[RatePolicy] = None,
) -> RateDecision:
    """
    Pure rate lookup. ``referrer_kind=None`` means no active referral, which
    yields a zero decision and no ledger entry.
    """
    if referrer_kind is None:
        return RateDecision.none()

    policy = policy or RatePolicy.from_settings()
    discount = policy.first_order_discount if is_first_order else ZERO

    if referrer_kind in (RecipientKind.PARTNER, RecipientKind.INFLUENCER):
        if is_first_order:
            return RateDecision(policy.initial_rate, discount, CommissionType.INITIAL, True)
        return RateDecision(policy.lifetime_rate, discount, CommissionType.LIFETIME, False)
    if referrer_kind == RecipientKind.CUSTOMER:
        return RateDecision(policy.customer_credit_rate, discount, CommissionType.CUSTOMER_CREDIT, is_first_order)
    raise ValueError(f"Unhandled referrer kind: {referrer_kind}")


def amount_for_rate(base_minor: int, rate: Decimal) -> int:
    """``base_minor * rate / 100`` rounded half-up to a whole minor unit."""
    value = Decimal(base_minor) * Decimal(str(rate)) / HUNDRED
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

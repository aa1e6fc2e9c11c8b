# pricing.py
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from order_service.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def round_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_money(value) -> Decimal:
    """Normalize a stored or aggregated amount (Decimal, float, int or None) to cents."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return round_cents(value)


@dataclass(frozen=True)
class CommissionPolicy:
    """Named commission constants; one canonical split for every call path."""

    restaurant_commission_rate: Decimal
    driver_delivery_share: Decimal
    platform_delivery_share: Decimal

    def __post_init__(self):
        if self.driver_delivery_share + self.platform_delivery_share != Decimal("1"):
            raise ValueError("driver and platform delivery shares must sum to 1")
        if not Decimal("0") <= self.restaurant_commission_rate < Decimal("1"):
            raise ValueError("restaurant commission rate must be in [0, 1)")

    @classmethod
    def from_config(cls, config) -> "CommissionPolicy":
        return cls(
            restaurant_commission_rate=Decimal(config.RESTAURANT_COMMISSION_RATE),
            driver_delivery_share=Decimal(config.DRIVER_DELIVERY_SHARE),
            platform_delivery_share=Decimal(config.PLATFORM_DELIVERY_SHARE),
        )


@dataclass(frozen=True)
class PriceBreakdown:
    items_subtotal: Decimal
    delivery_fee: Decimal
    total_price: Decimal
    commission_rate: Decimal
    restaurant_commission: Decimal
    driver_earning: Decimal
    delivery_commission: Decimal
    platform_earnings: Decimal

    @property
    def restaurant_earning(self) -> Decimal:
        return self.items_subtotal - self.restaurant_commission


def compute_breakdown(
    items_subtotal: Decimal,
    delivery_fee: Decimal,
    policy: CommissionPolicy,
    commission_rate: Optional[Decimal] = None,
) -> PriceBreakdown:
    """
    Split an order between restaurant, driver and platform.
    Shares are rounded to cents and the platform keeps the remainder,
    so restaurant + driver + platform always equals total_price.
    """
    if items_subtotal < 0 or delivery_fee < 0:
        raise ValidationError("Subtotal and delivery fee must be non-negative")

    rate = policy.restaurant_commission_rate if commission_rate is None else Decimal(commission_rate)
    if not Decimal("0") <= rate < Decimal("1"):
        raise ValidationError(f"Invalid commission rate: {rate}")

    items_subtotal = round_cents(Decimal(items_subtotal))
    delivery_fee = round_cents(Decimal(delivery_fee))

    restaurant_commission = round_cents(items_subtotal * rate)
    driver_earning = round_cents(delivery_fee * policy.driver_delivery_share)
    delivery_commission = delivery_fee - driver_earning

    return PriceBreakdown(
        items_subtotal=items_subtotal,
        delivery_fee=delivery_fee,
        total_price=items_subtotal + delivery_fee,
        commission_rate=rate,
        restaurant_commission=restaurant_commission,
        driver_earning=driver_earning,
        delivery_commission=delivery_commission,
        platform_earnings=restaurant_commission + delivery_commission,
    )

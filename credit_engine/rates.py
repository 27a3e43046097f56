"""
Rate Normalizer Module

Interest rate rules: percent normalization, the minimum-60 creation rate,
creation-time interest discounts and refinancing tiers. Rates are percents
(60 means 60%).
"""

from decimal import Decimal
from typing import Any, Optional, Tuple

from .config import EngineConfig
from .exceptions import ValidationError
from .models import PeriodUnit, RefinanceOption
from .money import HUNDRED, ZERO, clamp, fix2, to_decimal


ONE = Decimal('1')


def normalize_percent(raw: Any, fallback: Any = 60) -> Decimal:
    """
    Normalize a rate to percent units.

    Values in (0, 1] are read as fractions and multiplied by 100; other
    positive values pass through. Falsy, non-numeric or negative input
    returns ``fallback``.

    Examples:
        normalize_percent(0.6) -> Decimal('60')
        normalize_percent("45") -> Decimal('45')
        normalize_percent(None, 60) -> Decimal('60')
    """
    fallback_value = to_decimal(fallback)
    if raw is None or raw == "" or isinstance(raw, bool):
        return fallback_value

    value = to_decimal(raw)
    if value <= ZERO:
        return fallback_value
    if value <= ONE:
        return value * HUNDRED
    return value


def minimum_rate(period: PeriodUnit, installment_count: int,
                 floor: Decimal = Decimal('60')) -> Decimal:
    """
    Minimum total rate for a credit: max(floor, floor * n / nominal).

    The nominal length is the number of periods per month (4 weekly,
    2 biweekly, 1 monthly), so a credit longer than a month pays the floor
    once per month of term.
    """
    if installment_count < 1:
        raise ValidationError("Installment count must be at least 1", field="installment_count")
    scaled = floor * Decimal(installment_count) / Decimal(period.nominal_length)
    return max(floor, scaled)


def resolve_creation_rate(period: PeriodUnit, installment_count: int,
                          requested_rate: Any = None, from_financed_sale: bool = False,
                          floor: Decimal = Decimal('60')) -> Decimal:
    """Rate stored on a new fixed/progressive credit"""
    if from_financed_sale and requested_rate not in (None, ""):
        return normalize_percent(requested_rate, floor)
    return minimum_rate(period, installment_count, floor)


def total_payable(principal: Decimal, rate: Decimal) -> Decimal:
    return fix2(principal * (ONE + rate / HUNDRED))


def apply_interest_discount(principal: Decimal, rate: Decimal,
                            discount_pct: Any) -> Tuple[Decimal, Decimal]:
    """
    Apply a creation-time discount to the interest part only.

    Args:
        principal: Credit principal
        rate: Total rate in percent
        discount_pct: Discount on interest, clamped to 0-100

    Returns:
        Tuple of (applied discount percent, total payable)
    """
    pct = clamp(to_decimal(discount_pct), ZERO, HUNDRED)
    interest = fix2(principal * rate / HUNDRED)
    discounted = fix2(interest * (HUNDRED - pct) / HUNDRED)
    return pct, fix2(principal + discounted)


def per_period_rate(monthly_rate: Decimal, period: PeriodUnit) -> Decimal:
    """Monthly rate spread over the periods of one month"""
    return to_decimal(monthly_rate) / Decimal(period.nominal_length)


def refinance_monthly_rate(option: RefinanceOption, manual_rate: Optional[Any],
                           config: EngineConfig) -> Decimal:
    """Monthly rate for a refinancing tier"""
    if option == RefinanceOption.P1:
        return config.refinance_p1_monthly_rate
    if option == RefinanceOption.P2:
        return config.refinance_p2_monthly_rate

    rate = to_decimal(manual_rate)
    if rate <= ZERO:
        raise ValidationError("A manual refinance rate must be positive", field="manual_rate")
    return rate

"""
Money Helpers Module

Decimal arithmetic for credit amounts and the single numeric sanitizer used
at every boundary where amounts arrive as text. NEVER uses float for
monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Any, Iterable, List, Sequence

getcontext().prec = 28

ZERO = Decimal('0')
CENT = Decimal('0.01')
HUNDRED = Decimal('100')


def to_decimal(value: Any) -> Decimal:
    """
    Convert a number-like value to Decimal without rounding.

    None, empty strings and non-finite values become zero. Strings go
    through the same comma/dot normalization as ``sanitize_amount``.
    """
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        result = Decimal(repr(value))
        return result if result.is_finite() else ZERO
    if isinstance(value, str):
        return _parse_text(value)
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        return ZERO
    return result if result.is_finite() else ZERO


def _parse_text(text: str) -> Decimal:
    s = text.strip().replace('$', '').replace(' ', '')
    if not s:
        return ZERO
    if ',' in s and '.' in s:
        # "1.234,56" -> "1234.56"
        s = s.replace('.', '').replace(',', '.')
    elif ',' in s:
        # "1234,56" -> "1234.56"
        s = s.replace(',', '.')
    try:
        result = Decimal(s)
    except InvalidOperation:
        return ZERO
    return result if result.is_finite() else ZERO


def fix2(value: Any) -> Decimal:
    """Round to cents using ROUND_HALF_UP"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def sanitize_amount(value: Any) -> Decimal:
    """
    Normalize an amount coming from any caller to fixed two-decimal precision.

    Accepts Decimal, int, float and text in either decimal convention:
    "1.234,56", "1234,56" and "1234.56" all give Decimal("1234.56").
    None, empty and non-finite input give Decimal("0.00").
    """
    return fix2(value)


def clamp(value: Decimal, lower: Decimal, upper: Decimal) -> Decimal:
    return max(lower, min(value, upper))


def non_negative(value: Decimal) -> Decimal:
    return value if value > ZERO else ZERO


def sum_money(values: Iterable[Any]) -> Decimal:
    total = ZERO
    for value in values:
        total += fix2(value)
    return fix2(total)


def allocate_proportionally(total: Decimal, caps: Sequence[Decimal]) -> List[Decimal]:
    """
    Split ``total`` across slots proportionally to their caps.

    Each share is rounded to cents and capped at its slot; the rounding
    remainder goes to the last slot with room left, walking backwards.
    Never allocates more than ``min(total, sum(caps))``.
    """
    caps = [fix2(c) for c in caps]
    pool = sum(caps, ZERO)
    if not caps or pool <= ZERO or total <= ZERO:
        return [ZERO for _ in caps]

    target = fix2(min(total, pool))
    shares = []
    for cap in caps:
        share = fix2(cap / pool * target) if cap > ZERO else ZERO
        shares.append(min(share, cap))

    delta = fix2(target - sum(shares, ZERO))
    index = len(shares) - 1
    while delta != ZERO and index >= 0:
        if delta > ZERO:
            room = caps[index] - shares[index]
            step = min(room, delta)
        else:
            step = -min(shares[index], -delta)
        shares[index] = fix2(shares[index] + step)
        delta = fix2(delta - step)
        index -= 1

    return shares

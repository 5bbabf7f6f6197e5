from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from app.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value, *, field: str = "amount") -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, Decimal):
        parsed = value
    else:
        try:
            parsed = Decimal(str(value).strip())
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(f"{field} must be a number")
    if not parsed.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return parsed


def round2(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def as_money(value) -> Decimal:
    """Coerce a stored column value (Decimal, float or None) to a 2dp Decimal."""
    if value is None:
        return ZERO
    return round2(Decimal(str(value)))


def money_major_to_minor(amount) -> int:
    parsed = as_money(amount)
    return int((parsed * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def money_minor_to_major(minor) -> Decimal:
    try:
        parsed = Decimal(int(minor or 0))
    except (InvalidOperation, ValueError, TypeError):
        parsed = Decimal("0")
    return round2(parsed / Decimal("100"))

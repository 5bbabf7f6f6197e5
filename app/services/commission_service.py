from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal

from flask import current_app

from app.errors import ValidationError
from app.utils.events import log_event
from app.utils.money import round2, to_decimal
from app.utils.platform_settings import get_setting, set_setting

PLATFORM_FEE_SETTING_KEY = "platform_fee_percentage"
DEFAULT_PLATFORM_FEE_PERCENTAGE = Decimal("20")

_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class CommissionSplit:
    gross_amount: Decimal
    percentage: Decimal
    platform_fee: Decimal
    net_earnings: Decimal

    def to_dict(self) -> dict:
        return {
            "gross_amount": f"{self.gross_amount:.2f}",
            "platform_fee_percentage": f"{self.percentage:.2f}",
            "platform_fee": f"{self.platform_fee:.2f}",
            "net_earnings": f"{self.net_earnings:.2f}",
        }


def _validate_percentage(value) -> Decimal:
    pct = to_decimal(value, field="percentage")
    if pct < 0 or pct > _HUNDRED:
        raise ValidationError("percentage must be between 0 and 100")
    return pct


def _env_default_percentage() -> Decimal:
    raw = (os.getenv("PLATFORM_FEE_PERCENTAGE") or "").strip()
    if not raw:
        return DEFAULT_PLATFORM_FEE_PERCENTAGE
    try:
        return _validate_percentage(raw)
    except ValidationError:
        current_app.logger.warning("platform_fee_env_invalid value=%s", raw)
        return DEFAULT_PLATFORM_FEE_PERCENTAGE


def get_platform_fee_percentage() -> Decimal:
    raw = get_setting(PLATFORM_FEE_SETTING_KEY)
    if raw is None or not str(raw).strip():
        return _env_default_percentage()
    try:
        return _validate_percentage(raw)
    except ValidationError:
        current_app.logger.warning("platform_fee_setting_invalid value=%s", raw)
        return _env_default_percentage()


def set_platform_fee_percentage(percentage, *, updated_by: int | None = None) -> Decimal:
    """Change the platform-wide rate. Already-recognized earnings keep their snapshot."""
    pct = _validate_percentage(percentage)
    previous = get_platform_fee_percentage()
    set_setting(
        PLATFORM_FEE_SETTING_KEY,
        f"{pct:.2f}",
        setting_type="number",
        updated_by=updated_by,
        description="Platform commission percentage applied to new vendor earnings",
    )
    log_event(
        "commission.percentage_changed",
        actor_user_id=updated_by,
        actor_role="admin",
        subject_type="platform_setting",
        subject_id=PLATFORM_FEE_SETTING_KEY,
        metadata={"from": previous, "to": pct},
    )
    return pct


def calculate_commission(gross_amount, percentage=None) -> CommissionSplit:
    gross = to_decimal(gross_amount, field="gross_amount")
    if gross < 0:
        raise ValidationError("gross_amount must not be negative")
    pct = get_platform_fee_percentage() if percentage is None else _validate_percentage(percentage)
    gross = round2(gross)
    platform_fee = round2(gross * pct / _HUNDRED)
    return CommissionSplit(
        gross_amount=gross,
        percentage=round2(pct),
        platform_fee=platform_fee,
        net_earnings=gross - platform_fee,
    )

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime

from app.extensions import db
from app.models import PlatformSetting


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def _coerce_bool(raw: str | None, default: bool) -> bool:
    value = (raw or "").strip().lower()
    if not value:
        return bool(default)
    return value in ("1", "true", "yes", "on")


def get_setting(key: str, default: str | None = None) -> str | None:
    row = PlatformSetting.query.filter_by(setting_key=(key or "").strip()).first()
    if row is None:
        return default
    return row.setting_value


def set_setting(
    key: str,
    value,
    *,
    setting_type: str = "string",
    updated_by: int | None = None,
    description: str | None = None,
) -> PlatformSetting:
    """Upsert a platform setting. The caller commits."""
    clean_key = (key or "").strip()[:100]
    row = PlatformSetting.query.filter_by(setting_key=clean_key).first()
    if row is None:
        row = PlatformSetting(setting_key=clean_key)
        db.session.add(row)
    row.setting_value = str(value)
    row.setting_type = setting_type
    row.updated_by = updated_by
    row.updated_at = datetime.utcnow()
    if description is not None:
        row.description = description[:255]
    return row


@dataclass
class IntegrationSettings:
    integrations_mode: str = "disabled"
    payments_provider: str = "mock"
    paystack_enabled: bool = False
    termii_enabled_sms: bool = False
    email_enabled: bool = False

    def to_dict(self) -> dict:
        return {
            "integrations_mode": self.integrations_mode,
            "payments_provider": self.payments_provider,
            "paystack_enabled": self.paystack_enabled,
            "termii_enabled_sms": self.termii_enabled_sms,
            "email_enabled": self.email_enabled,
        }


def get_integration_settings() -> IntegrationSettings:
    """Environment defaults, overridden by rows in ``platform_settings``."""
    mode = get_setting("integrations_mode", os.getenv("INTEGRATIONS_MODE") or "disabled")
    provider = get_setting("payments_provider", os.getenv("PAYMENTS_PROVIDER") or "mock")
    return IntegrationSettings(
        integrations_mode=(mode or "disabled").strip().lower(),
        payments_provider=(provider or "mock").strip().lower(),
        paystack_enabled=_coerce_bool(get_setting("paystack_enabled"), _env_bool("PAYSTACK_ENABLED", False)),
        termii_enabled_sms=_coerce_bool(get_setting("termii_enabled_sms"), _env_bool("TERMII_ENABLED_SMS", False)),
        email_enabled=_coerce_bool(get_setting("email_enabled"), _env_bool("EMAIL_ENABLED", False)),
    )

from datetime import datetime
from decimal import Decimal

from app.extensions import db


def _money(value) -> str:
    return f"{Decimal(str(value or 0)):.2f}"


class Vendor(db.Model):
    __tablename__ = "vendors"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, unique=True, index=True)

    business_name = db.Column(db.String(160), nullable=False, default="")
    contact_name = db.Column(db.String(120), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)

    business_address = db.Column(db.String(255), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    # Bank or mobile-money account used for payouts
    bank_name = db.Column(db.String(120), nullable=True)
    bank_code = db.Column(db.String(32), nullable=True)
    account_number = db.Column(db.String(64), nullable=True)
    account_name = db.Column(db.String(120), nullable=True)
    paystack_recipient_code = db.Column(db.String(64), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Cached aggregate; total == available + pending + paid_out
    total_earnings = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    available_balance = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    pending_balance = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_paid_out = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def has_payout_account(self) -> bool:
        return bool(
            (self.account_number or "").strip()
            and (self.account_name or "").strip()
            and ((self.bank_name or "").strip() or (self.bank_code or "").strip())
        )

    def location(self) -> tuple[float, float] | None:
        if self.latitude is None or self.longitude is None:
            return None
        return float(self.latitude), float(self.longitude)

    def balances_dict(self) -> dict:
        return {
            "total_earnings": _money(self.total_earnings),
            "available_balance": _money(self.available_balance),
            "pending_balance": _money(self.pending_balance),
            "total_paid_out": _money(self.total_paid_out),
        }

    def to_public_dict(self) -> dict:
        return {
            "id": int(self.id),
            "business_name": self.business_name or "",
            "business_address": self.business_address or "",
            "latitude": self.latitude,
            "longitude": self.longitude,
        }

    def to_dict(self) -> dict:
        payload = {
            "id": int(self.id),
            "user_id": int(self.user_id) if self.user_id is not None else None,
            "business_name": self.business_name or "",
            "contact_name": self.contact_name or "",
            "email": self.email or "",
            "phone": self.phone or "",
            "business_address": self.business_address or "",
            "latitude": self.latitude,
            "longitude": self.longitude,
            "bank_name": self.bank_name or "",
            "has_payout_account": self.has_payout_account(),
            "is_active": bool(self.is_active),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        payload.update(self.balances_dict())
        return payload

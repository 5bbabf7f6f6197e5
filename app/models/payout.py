from datetime import datetime
from decimal import Decimal

from app.extensions import db


def _money(value) -> str | None:
    if value is None:
        return None
    return f"{Decimal(str(value)):.2f}"


def _iso(value):
    return value.isoformat() if value else None


class PayoutRequest(db.Model):
    __tablename__ = "payout_requests"

    id = db.Column(db.Integer, primary_key=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False, index=True)

    requested_amount = db.Column(db.Numeric(12, 2), nullable=False)
    available_balance_snapshot = db.Column(db.Numeric(12, 2), nullable=False)

    # pending | approved | processing | completed | rejected | failed
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    request_reason = db.Column(db.Text, nullable=True)

    reviewed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    reviewed_at = db.Column(db.DateTime, nullable=True)
    admin_notes = db.Column(db.Text, nullable=True)

    transfer_reference = db.Column(db.String(128), nullable=True, unique=True)
    transfer_code = db.Column(db.String(128), nullable=True, index=True)
    transfer_status = db.Column(db.String(24), nullable=True)
    failure_reason = db.Column(db.Text, nullable=True)

    actual_paid_amount = db.Column(db.Numeric(12, 2), nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "vendor_id": int(self.vendor_id),
            "requested_amount": _money(self.requested_amount),
            "available_balance_snapshot": _money(self.available_balance_snapshot),
            "status": self.status or "pending",
            "request_reason": self.request_reason or "",
            "reviewed_by": int(self.reviewed_by) if self.reviewed_by is not None else None,
            "reviewed_at": _iso(self.reviewed_at),
            "admin_notes": self.admin_notes or "",
            "transfer_reference": self.transfer_reference or "",
            "transfer_code": self.transfer_code or "",
            "transfer_status": self.transfer_status or "",
            "failure_reason": self.failure_reason or "",
            "actual_paid_amount": _money(self.actual_paid_amount),
            "completed_at": _iso(self.completed_at),
            "failed_at": _iso(self.failed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

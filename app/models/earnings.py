from datetime import datetime
from decimal import Decimal

from app.extensions import db


def _money(value) -> str:
    return f"{Decimal(str(value or 0)):.2f}"


def _iso(value):
    return value.isoformat() if value else None


class VendorEarning(db.Model):
    __tablename__ = "vendor_earnings"

    id = db.Column(db.Integer, primary_key=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=False, unique=True)

    gross_amount = db.Column(db.Numeric(12, 2), nullable=False)
    # Snapshot of the rate in force when the earning was recognized
    platform_fee_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=Decimal("20.00"))
    platform_fee = db.Column(db.Numeric(12, 2), nullable=False)
    net_earnings = db.Column(db.Numeric(12, 2), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending | available | paid_out

    earning_date = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    available_date = db.Column(db.DateTime, nullable=True)
    paid_out_at = db.Column(db.DateTime, nullable=True)
    payout_request_id = db.Column(db.Integer, db.ForeignKey("payout_requests.id"), nullable=True, index=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "vendor_id": int(self.vendor_id),
            "order_id": int(self.order_id),
            "order_item_id": int(self.order_item_id),
            "gross_amount": _money(self.gross_amount),
            "platform_fee_percentage": _money(self.platform_fee_percentage),
            "platform_fee": _money(self.platform_fee),
            "net_earnings": _money(self.net_earnings),
            "status": self.status or "pending",
            "earning_date": _iso(self.earning_date),
            "available_date": _iso(self.available_date),
            "paid_out_at": _iso(self.paid_out_at),
            "payout_request_id": int(self.payout_request_id) if self.payout_request_id is not None else None,
        }

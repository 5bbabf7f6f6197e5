from datetime import datetime
from decimal import Decimal

from app.extensions import db


def _money(value) -> str:
    return f"{Decimal(str(value or 0)):.2f}"


def _iso(value):
    return value.isoformat() if value else None


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, default="paid", index=True)
    order_type = db.Column(db.String(16), nullable=False, default="product")  # product | service

    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    delivery_fee = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    delivery_address = db.Column(db.String(255), nullable=True)
    service_location = db.Column(db.String(255), nullable=True)
    delivery_latitude = db.Column(db.Float, nullable=True)
    delivery_longitude = db.Column(db.Float, nullable=True)

    payment_status = db.Column(db.String(24), nullable=False, default="completed")
    payment_method = db.Column(db.String(32), nullable=True)
    payment_reference = db.Column(db.String(128), nullable=False, unique=True, index=True)

    courier_id = db.Column(db.String(64), nullable=True)
    courier_name = db.Column(db.String(120), nullable=True)
    tracking_number = db.Column(db.String(64), nullable=True)
    internal_tracking_id = db.Column(db.String(64), nullable=True, unique=True)

    confirmation_token = db.Column(db.String(96), nullable=True, unique=True, index=True)

    notes = db.Column(db.Text, nullable=True)
    vendor_notes = db.Column(db.Text, nullable=True)
    dispute_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    vendor_accepted_at = db.Column(db.DateTime, nullable=True)
    delivery_pickup_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    customer_confirmed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    items = db.relationship("OrderItem", backref="order", lazy="selectin", order_by="OrderItem.id")

    def delivery_location(self) -> tuple[float, float] | None:
        if self.delivery_latitude is None or self.delivery_longitude is None:
            return None
        return float(self.delivery_latitude), float(self.delivery_longitude)

    def to_dict(self, *, include_items: bool = True) -> dict:
        payload = {
            "id": int(self.id),
            "buyer_id": int(self.buyer_id),
            "vendor_id": int(self.vendor_id),
            "status": self.status or "",
            "order_type": self.order_type or "product",
            "total_amount": _money(self.total_amount),
            "delivery_fee": _money(self.delivery_fee),
            "delivery_address": self.delivery_address or "",
            "service_location": self.service_location or "",
            "payment_status": self.payment_status or "",
            "payment_method": self.payment_method or "",
            "payment_reference": self.payment_reference or "",
            "courier_id": self.courier_id or "",
            "courier_name": self.courier_name or "",
            "tracking_number": self.tracking_number or "",
            "notes": self.notes or "",
            "vendor_notes": self.vendor_notes or "",
            "dispute_reason": self.dispute_reason or "",
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "vendor_accepted_at": _iso(self.vendor_accepted_at),
            "delivery_pickup_at": _iso(self.delivery_pickup_at),
            "delivered_at": _iso(self.delivered_at),
            "customer_confirmed_at": _iso(self.customer_confirmed_at),
            "cancelled_at": _iso(self.cancelled_at),
        }
        if include_items:
            payload["items"] = [item.to_dict() for item in (self.items or [])]
        return payload


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_order_items_quantity_positive"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    # Catalog references; exactly one is set
    product_id = db.Column(db.Integer, nullable=True)
    service_id = db.Column(db.Integer, nullable=True)

    name = db.Column(db.String(200), nullable=False, default="")
    quantity = db.Column(db.Integer, nullable=False, default=1)
    price = db.Column(db.Numeric(12, 2), nullable=False)

    appointment_date = db.Column(db.String(32), nullable=True)
    appointment_time = db.Column(db.String(16), nullable=True)
    duration = db.Column(db.Integer, nullable=False, default=1)
    service_location = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def line_total(self) -> Decimal:
        return Decimal(str(self.price or 0)) * int(self.quantity or 0)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "product_id": self.product_id,
            "service_id": self.service_id,
            "name": self.name or "",
            "quantity": int(self.quantity or 0),
            "price": _money(self.price),
            "appointment_date": self.appointment_date,
            "appointment_time": self.appointment_time,
            "duration": int(self.duration or 1),
            "service_location": self.service_location or "",
        }


class OrderTracking(db.Model):
    __tablename__ = "order_tracking"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    delivery_id = db.Column(db.Integer, db.ForeignKey("deliveries.id"), nullable=True)

    status = db.Column(db.String(64), nullable=False)
    description = db.Column(db.Text, nullable=False)
    location = db.Column(db.String(120), nullable=True)
    is_delivered = db.Column(db.Boolean, nullable=False, default=False)
    source = db.Column(db.String(24), nullable=False, default="system")

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "delivery_id": int(self.delivery_id) if self.delivery_id is not None else None,
            "status": self.status or "",
            "description": self.description or "",
            "location": self.location or "",
            "is_delivered": bool(self.is_delivered),
            "source": self.source or "system",
            "timestamp": _iso(self.created_at),
        }

from datetime import datetime
from decimal import Decimal

from app.extensions import db


def _money(value) -> str:
    return f"{Decimal(str(value or 0)):.2f}"


def _iso(value):
    return value.isoformat() if value else None


class DeliveryProvider(db.Model):
    __tablename__ = "delivery_providers"

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(64), nullable=False, unique=True, index=True)
    name = db.Column(db.String(120), nullable=False)
    provider_type = db.Column(db.String(32), nullable=False, default="manual")  # fargo_courier | g4s | manual

    notification_method = db.Column(db.String(16), nullable=False, default="sms")  # sms | email
    contact_email = db.Column(db.String(255), nullable=True)
    contact_phone = db.Column(db.String(32), nullable=True)

    base_rate = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    distance_rate = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    estimated_delivery_time = db.Column(db.String(64), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "slug": self.slug or "",
            "name": self.name or "",
            "provider_type": self.provider_type or "manual",
            "notification_method": self.notification_method or "sms",
            "contact_email": self.contact_email or "",
            "contact_phone": self.contact_phone or "",
            "base_rate": _money(self.base_rate),
            "distance_rate": _money(self.distance_rate),
            "estimated_delivery_time": self.estimated_delivery_time or "",
            "is_active": bool(self.is_active),
        }


class Delivery(db.Model):
    __tablename__ = "deliveries"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    provider_id = db.Column(db.Integer, db.ForeignKey("delivery_providers.id"), nullable=False, index=True)

    external_tracking_id = db.Column(db.String(120), nullable=True, index=True)
    status = db.Column(db.String(32), nullable=False, default="pending", index=True)

    pickup_address = db.Column(db.String(255), nullable=True)
    delivery_address = db.Column(db.String(255), nullable=True)

    delivery_fee = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    distance_km = db.Column(db.Float, nullable=True)
    weight_kg = db.Column(db.Float, nullable=True)
    package_description = db.Column(db.String(255), nullable=True)

    estimated_pickup_time = db.Column(db.DateTime, nullable=True)
    estimated_delivery_time = db.Column(db.DateTime, nullable=True)
    actual_pickup_time = db.Column(db.DateTime, nullable=True)
    actual_delivery_time = db.Column(db.DateTime, nullable=True)

    failure_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    provider = db.relationship("DeliveryProvider", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "provider_id": int(self.provider_id),
            "provider_name": self.provider.name if self.provider else "",
            "external_tracking_id": self.external_tracking_id or "",
            "status": self.status or "",
            "pickup_address": self.pickup_address or "",
            "delivery_address": self.delivery_address or "",
            "delivery_fee": _money(self.delivery_fee),
            "distance_km": self.distance_km,
            "weight_kg": self.weight_kg,
            "package_description": self.package_description or "",
            "estimated_pickup_time": _iso(self.estimated_pickup_time),
            "estimated_delivery_time": _iso(self.estimated_delivery_time),
            "actual_pickup_time": _iso(self.actual_pickup_time),
            "actual_delivery_time": _iso(self.actual_delivery_time),
            "failure_reason": self.failure_reason or "",
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class DeliveryUpdate(db.Model):
    __tablename__ = "delivery_updates"
    __table_args__ = (
        db.UniqueConstraint("delivery_id", "external_event_id", name="uq_delivery_updates_event"),
    )

    id = db.Column(db.Integer, primary_key=True)
    delivery_id = db.Column(db.Integer, db.ForeignKey("deliveries.id"), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False)
    kind = db.Column(db.String(16), nullable=False, default="status")  # status | reassigned
    description = db.Column(db.Text, nullable=True)
    location = db.Column(db.String(120), nullable=True)
    source = db.Column(db.String(16), nullable=False, default="manual")  # api | webhook | manual
    external_event_id = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "delivery_id": int(self.delivery_id),
            "status": self.status or "",
            "kind": self.kind or "status",
            "description": self.description or "",
            "location": self.location or "",
            "source": self.source or "manual",
            "external_event_id": self.external_event_id or "",
            "timestamp": _iso(self.created_at),
        }

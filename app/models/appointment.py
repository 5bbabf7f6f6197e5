from datetime import datetime

from app.extensions import db


class Appointment(db.Model):
    """Vendor task backing a service order."""

    __tablename__ = "appointments"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    service_id = db.Column(db.Integer, nullable=True)

    service_name = db.Column(db.String(200), nullable=True)
    appointment_date = db.Column(db.String(32), nullable=True)
    appointment_time = db.Column(db.String(16), nullable=True)
    address = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(32), nullable=False, default="pending_acceptance", index=True)
    vendor_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "vendor_id": int(self.vendor_id),
            "buyer_id": int(self.buyer_id),
            "service_id": self.service_id,
            "service_name": self.service_name or "",
            "appointment_date": self.appointment_date,
            "appointment_time": self.appointment_time,
            "address": self.address or "",
            "status": self.status or "",
            "vendor_notes": self.vendor_notes or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

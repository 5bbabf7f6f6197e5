from datetime import datetime
import json

from app.extensions import db


class Notification(db.Model):
    """Outbox row written in the same transaction as the state change that caused it."""

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)

    event_type = db.Column(db.String(64), nullable=False, index=True)  # order.ready_for_pickup, payout.rejected, ...
    channel = db.Column(db.String(16), nullable=False, default="sms")  # sms | email
    recipient = db.Column(db.String(255), nullable=False)
    title = db.Column(db.String(160), nullable=True)
    message = db.Column(db.Text, nullable=False)

    status = db.Column(db.String(16), nullable=False, default="queued", index=True)  # queued | sent | failed | skipped
    attempts = db.Column(db.Integer, nullable=False, default=0)
    provider = db.Column(db.String(64), nullable=True)
    provider_ref = db.Column(db.String(120), nullable=True)
    last_error = db.Column(db.Text, nullable=True)

    subject_type = db.Column(db.String(32), nullable=True, index=True)
    subject_id = db.Column(db.String(64), nullable=True, index=True)
    dedupe_key = db.Column(db.String(180), nullable=True, unique=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    sent_at = db.Column(db.DateTime, nullable=True)

    meta = db.Column(db.Text, nullable=True)  # JSON string

    def meta_dict(self) -> dict:
        raw = (self.meta or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
            return data if isinstance(data, dict) else {}
        except Exception:
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type or "",
            "channel": self.channel or "sms",
            "recipient": self.recipient or "",
            "title": self.title or "",
            "message": self.message or "",
            "status": self.status or "queued",
            "attempts": int(self.attempts or 0),
            "provider": self.provider or "",
            "provider_ref": self.provider_ref or "",
            "last_error": self.last_error or "",
            "subject_type": self.subject_type or "",
            "subject_id": self.subject_id or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "meta": self.meta_dict(),
        }

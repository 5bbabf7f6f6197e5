from datetime import datetime

from app.extensions import db


class PlatformSetting(db.Model):
    __tablename__ = "platform_settings"

    id = db.Column(db.Integer, primary_key=True)
    setting_key = db.Column(db.String(100), nullable=False, unique=True, index=True)
    setting_value = db.Column(db.Text, nullable=False, default="")
    setting_type = db.Column(db.String(16), nullable=False, default="string")  # string | number | boolean
    description = db.Column(db.String(255), nullable=True)

    updated_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "key": self.setting_key,
            "value": self.setting_value,
            "type": self.setting_type or "string",
            "description": self.description or "",
            "updated_by": int(self.updated_by) if self.updated_by is not None else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

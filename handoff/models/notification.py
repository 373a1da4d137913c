import json
from datetime import datetime

from handoff.extensions import db


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    kind = db.Column(db.String(32), nullable=False, default="general")  # order_picked_up | order_delivered | escrow_released | ...
    channel = db.Column(db.String(16), nullable=False, default="push")
    title = db.Column(db.String(160), nullable=True)
    message = db.Column(db.Text, nullable=False)
    data_json = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="queued")  # queued | sent | failed
    provider = db.Column(db.String(32), nullable=True)
    provider_ref = db.Column(db.String(120), nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(240), nullable=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    sent_at = db.Column(db.DateTime, nullable=True)

    def data_dict(self) -> dict:
        raw = (self.data_json or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def mark_read(self, read_at: datetime | None = None) -> datetime:
        stamped = read_at or datetime.utcnow()
        self.is_read = True
        self.read_at = stamped
        return stamped

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.kind,
            "channel": self.channel,
            "title": self.title or "",
            "message": self.message or "",
            "data": self.data_dict(),
            "status": self.status or "queued",
            "provider": self.provider or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "is_read": bool(self.is_read),
            "read_at": self.read_at.isoformat() if self.read_at else None,
        }

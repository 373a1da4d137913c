from datetime import datetime

from handoff.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False, default="mock")
    event_id = db.Column(db.String(128), nullable=False, unique=True)
    reference = db.Column(db.String(128), nullable=True, index=True)
    amount_minor = db.Column(db.BigInteger, nullable=True)
    currency = db.Column(db.String(3), nullable=True)
    provider_status = db.Column(db.String(32), nullable=True)

    status = db.Column(db.String(24), nullable=False, default="received")  # received | processed | rejected | failed
    outcome = db.Column(db.String(32), nullable=True)  # credited | marked_failed | ignored | amount_mismatch | noted
    processed_at = db.Column(db.DateTime, nullable=True)
    request_id = db.Column(db.String(64), nullable=True)
    payload_hash = db.Column(db.String(64), nullable=True)
    payload_json = db.Column(db.Text, nullable=True)
    error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "provider": self.provider,
            "event_id": self.event_id,
            "reference": self.reference or "",
            "amount": self.amount_minor,
            "currency": self.currency,
            "provider_status": self.provider_status or "",
            "status": self.status or "",
            "outcome": self.outcome or "",
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "request_id": self.request_id or "",
            "payload_hash": self.payload_hash or "",
            "error": self.error or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

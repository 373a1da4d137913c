from datetime import datetime

from handoff.extensions import db


class ExpirableId(db.Model):
    """Public identifier with a bounded lifetime bound to one entity."""

    __tablename__ = "expirable_ids"

    id = db.Column(db.Integer, primary_key=True)
    public_id = db.Column(db.String(64), nullable=False, unique=True)
    id_type = db.Column(db.String(16), nullable=False, index=True)  # delivery | payment | access
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def is_live(self, now: datetime | None = None) -> bool:
        moment = now or datetime.utcnow()
        return bool(self.is_active) and self.expires_at is not None and moment < self.expires_at

    def to_dict(self):
        return {
            "public_id": self.public_id,
            "type": self.id_type,
            "entity_type": self.entity_type,
            "entity_id": int(self.entity_id),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_active": bool(self.is_active),
        }


class HandoffToken(db.Model):
    __tablename__ = "handoff_tokens"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True)
    token = db.Column(db.String(64), nullable=False, unique=True)
    reference = db.Column(db.String(64), nullable=False, unique=True)
    expirable_id = db.Column(db.Integer, db.ForeignKey("expirable_ids.id"), nullable=False)

    pickup_consumed_at = db.Column(db.DateTime, nullable=True)
    pickup_consumed_by = db.Column(db.Integer, nullable=True)
    delivery_consumed_at = db.Column(db.DateTime, nullable=True)
    delivery_consumed_by = db.Column(db.Integer, nullable=True)
    invalidated_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    lifetime = db.relationship("ExpirableId", lazy="joined")

    def to_dict(self, *, include_token: bool = False):
        data = {
            "order_id": int(self.order_id),
            "reference": self.reference,
            "expires_at": self.lifetime.expires_at.isoformat() if self.lifetime and self.lifetime.expires_at else None,
            "pickup_consumed_at": self.pickup_consumed_at.isoformat() if self.pickup_consumed_at else None,
            "delivery_consumed_at": self.delivery_consumed_at.isoformat() if self.delivery_consumed_at else None,
            "invalidated": self.invalidated_at is not None,
        }
        if include_token:
            data["token"] = self.token
        return data

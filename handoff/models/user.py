import enum
from datetime import datetime

from handoff.extensions import db


class Role(str, enum.Enum):
    BUYER = "buyer"
    SELLER = "seller"
    COURIER = "courier"
    TAXI_MOTO = "taxi_moto"
    FREIGHT_FORWARDER = "freight_forwarder"
    ADMIN = "admin"

    @classmethod
    def parse(cls, raw) -> "Role | None":
        if isinstance(raw, Role):
            return raw
        try:
            return cls((str(raw or "")).strip().lower())
        except ValueError:
            return None


COURIER_ROLES = frozenset({Role.COURIER, Role.TAXI_MOTO, Role.FREIGHT_FORWARDER})


class User(db.Model):
    """Local mirror of an identity-provider account: id, role and matching stats."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=True)
    role = db.Column(db.String(32), nullable=False, default=Role.BUYER.value)

    rating = db.Column(db.Float, nullable=False, default=4.0)
    avg_response_seconds = db.Column(db.Integer, nullable=True)
    is_online = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    @property
    def role_enum(self) -> Role:
        return Role.parse(self.role) or Role.BUYER

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name or "",
            "email": self.email,
            "role": self.role_enum.value,
            "rating": float(self.rating if self.rating is not None else 4.0),
            "avg_response_seconds": self.avg_response_seconds,
            "is_online": bool(self.is_online),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

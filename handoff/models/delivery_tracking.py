from datetime import datetime

from handoff.extensions import db


class DeliveryTracking(db.Model):
    __tablename__ = "delivery_tracking"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True)
    courier_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, nullable=False)
    buyer_id = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="assigned", index=True)  # assigned | picked_up | in_transit | delivered | cancelled

    last_lat = db.Column(db.Float, nullable=True)
    last_lng = db.Column(db.Float, nullable=True)
    last_location_at = db.Column(db.DateTime, nullable=True)

    pickup_lat = db.Column(db.Float, nullable=True)
    pickup_lng = db.Column(db.Float, nullable=True)
    dropoff_lat = db.Column(db.Float, nullable=True)
    dropoff_lng = db.Column(db.Float, nullable=True)
    estimated_arrival_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        last = None
        if self.last_lat is not None and self.last_lng is not None:
            last = {
                "latitude": float(self.last_lat),
                "longitude": float(self.last_lng),
                "at": self.last_location_at.isoformat() if self.last_location_at else None,
            }
        return {
            "order_id": int(self.order_id),
            "courier_id": int(self.courier_id),
            "seller_id": int(self.seller_id),
            "buyer_id": int(self.buyer_id),
            "status": self.status,
            "last_location": last,
            "estimated_arrival_at": self.estimated_arrival_at.isoformat() if self.estimated_arrival_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class LocationReport(db.Model):
    """Latest reported position per user. Older reports never overwrite newer ones."""

    __tablename__ = "location_reports"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    accuracy_m = db.Column(db.Float, nullable=True)
    speed_mps = db.Column(db.Float, nullable=True)
    heading_deg = db.Column(db.Float, nullable=True)
    order_id = db.Column(db.Integer, nullable=True)
    reported_at = db.Column(db.DateTime, nullable=False, index=True)
    received_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "user_id": int(self.user_id),
            "latitude": float(self.latitude),
            "longitude": float(self.longitude),
            "accuracy": self.accuracy_m,
            "speed": self.speed_mps,
            "heading": self.heading_deg,
            "order_id": self.order_id,
            "reported_at": self.reported_at.isoformat() if self.reported_at else None,
        }

from datetime import datetime

from sqlalchemy import event, inspect

from handoff.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    affiliate_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    currency = db.Column(db.String(3), nullable=False)
    subtotal_minor = db.Column(db.BigInteger, nullable=False, default=0)
    platform_fee_minor = db.Column(db.BigInteger, nullable=False, default=0)
    total_minor = db.Column(db.BigInteger, nullable=False, default=0)
    affiliate_commission_minor = db.Column(db.BigInteger, nullable=False, default=0)
    seller_net_minor = db.Column(db.BigInteger, nullable=False, default=0)
    platform_net_minor = db.Column(db.BigInteger, nullable=False, default=0)
    fee_bps = db.Column(db.Integer, nullable=False, default=0)
    affiliate_share_bps = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="PLACED", index=True)  # PLACED | PICKED | DELIVERED | CANCELLED
    escrow_status = db.Column(db.String(16), nullable=False, default="NONE", index=True)
    escrow_held_at = db.Column(db.DateTime, nullable=True)
    escrow_released_at = db.Column(db.DateTime, nullable=True)
    escrow_refunded_at = db.Column(db.DateTime, nullable=True)

    qr_reference = db.Column(db.String(64), nullable=True, unique=True)

    pickup_lat = db.Column(db.Float, nullable=True)
    pickup_lng = db.Column(db.Float, nullable=True)
    pickup_address = db.Column(db.String(255), nullable=True)
    dropoff_lat = db.Column(db.Float, nullable=True)
    dropoff_lng = db.Column(db.Float, nullable=True)
    dropoff_address = db.Column(db.String(255), nullable=True)

    cancel_reason = db.Column(db.String(64), nullable=True)
    cancelled_by = db.Column(db.Integer, nullable=True)

    dispute_reason = db.Column(db.String(240), nullable=True)
    dispute_opened_by = db.Column(db.Integer, nullable=True)
    dispute_resolution = db.Column(db.String(16), nullable=True)  # refund | release
    dispute_note = db.Column(db.String(240), nullable=True)
    dispute_resolved_by = db.Column(db.Integer, nullable=True)
    disputed_at = db.Column(db.DateTime, nullable=True)
    dispute_resolved_at = db.Column(db.DateTime, nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    picked_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy="selectin",
        order_by="OrderItem.id",
    )

    # Cancel, delivery and the expiry sweep race on status and escrow moves;
    # the losing flush raises StaleDataError and run_atomic re-reads the order.
    __mapper_args__ = {"version_id_col": version}

    @property
    def reference(self) -> str:
        return f"order:{int(self.id)}"

    @property
    def escrow_held(self) -> bool:
        return (self.escrow_status or "NONE") in ("HELD", "DISPUTED")

    def participant_ids(self) -> set[int]:
        ids = {int(self.buyer_id), int(self.seller_id)}
        if self.affiliate_id is not None:
            ids.add(int(self.affiliate_id))
        return ids

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "affiliate_id": int(self.affiliate_id) if self.affiliate_id is not None else None,
            "currency": self.currency,
            "subtotal": int(self.subtotal_minor or 0),
            "platform_fee": int(self.platform_fee_minor or 0),
            "total": int(self.total_minor or 0),
            "affiliate_commission": int(self.affiliate_commission_minor or 0),
            "seller_net": int(self.seller_net_minor or 0),
            "platform_net": int(self.platform_net_minor or 0),
            "status": self.status,
            "escrow": {
                "status": self.escrow_status,
                "held": self.escrow_held,
                "held_at": self.escrow_held_at.isoformat() if self.escrow_held_at else None,
                "released_at": self.escrow_released_at.isoformat() if self.escrow_released_at else None,
                "refunded_at": self.escrow_refunded_at.isoformat() if self.escrow_refunded_at else None,
            },
            "qr_reference": self.qr_reference,
            "pickup": _endpoint(self.pickup_lat, self.pickup_lng, self.pickup_address),
            "dropoff": _endpoint(self.dropoff_lat, self.dropoff_lng, self.dropoff_address),
            "cancel_reason": self.cancel_reason,
            "dispute": _dispute(self),
            "items": [item.to_dict() for item in (self.items or [])],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "picked_at": self.picked_at.isoformat() if self.picked_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }


def _endpoint(lat, lng, address):
    if lat is None or lng is None:
        return None
    return {"latitude": float(lat), "longitude": float(lng), "address": address or ""}


def _dispute(order: Order):
    if order.disputed_at is None:
        return None
    return {
        "reason": order.dispute_reason or "",
        "opened_by": order.dispute_opened_by,
        "opened_at": order.disputed_at.isoformat(),
        "resolution": order.dispute_resolution,
        "note": order.dispute_note or "",
        "resolved_at": order.dispute_resolved_at.isoformat() if order.dispute_resolved_at else None,
    }


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_minor = db.Column(db.BigInteger, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    line_total_minor = db.Column(db.BigInteger, nullable=False)
    title = db.Column(db.String(160), nullable=True)

    def to_dict(self) -> dict:
        return {
            "product_id": int(self.product_id),
            "title": self.title or "",
            "quantity": int(self.quantity),
            "unit_price": int(self.unit_price_minor),
            "currency": self.currency,
            "line_total": int(self.line_total_minor),
        }


class OrderEvent(db.Model):
    __tablename__ = "order_events"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    actor_user_id = db.Column(db.Integer, nullable=True)
    event = db.Column(db.String(48), nullable=False)
    note = db.Column(db.String(240), nullable=True)
    idempotency_key = db.Column(db.String(160), nullable=False, unique=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "actor_user_id": self.actor_user_id,
            "event": self.event,
            "note": self.note or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


FROZEN_ORDER_COLUMNS = (
    "buyer_id",
    "seller_id",
    "affiliate_id",
    "currency",
    "subtotal_minor",
    "platform_fee_minor",
    "total_minor",
    "affiliate_commission_minor",
    "seller_net_minor",
    "platform_net_minor",
    "fee_bps",
    "affiliate_share_bps",
)


@event.listens_for(Order, "before_update")
def _reject_amount_changes(mapper, connection, target):
    state = inspect(target)
    for name in FROZEN_ORDER_COLUMNS:
        hist = state.attrs[name].history
        if hist.deleted and list(hist.added) != list(hist.deleted):
            raise ValueError(f"order_{name}_immutable")


@event.listens_for(OrderItem, "before_update")
def _reject_item_changes(mapper, connection, target):
    session = inspect(target).session
    if session is not None and not session.is_modified(target, include_collections=False):
        return
    raise ValueError("order_items_immutable")

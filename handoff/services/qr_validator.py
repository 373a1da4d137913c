from __future__ import annotations

import hmac
import secrets
from datetime import datetime

from handoff.errors import AlreadyConsumed, InvalidToken, RoleMismatch, WrongStage
from handoff.extensions import db
from handoff.models import DeliveryTracking, ExpirableId, HandoffToken, Order

STAGE_PICKUP = "pickup"
STAGE_DELIVERY = "delivery"
STAGES = (STAGE_PICKUP, STAGE_DELIVERY)


def issue(order: Order, *, expires_at: datetime | None = None) -> HandoffToken:
    """Issue the single handoff token that authorizes both pickup and delivery.

    The token's lifetime is bound to the order through a ``delivery``
    ExpirableId that expires with the order.
    """
    if order.id is None:
        db.session.flush()
    lifetime = ExpirableId(
        public_id=f"dlv_{secrets.token_hex(12)}",
        id_type="delivery",
        entity_type="order",
        entity_id=int(order.id),
        expires_at=expires_at or order.expires_at,
        is_active=True,
    )
    db.session.add(lifetime)
    db.session.flush()
    row = HandoffToken(
        order_id=int(order.id),
        token=secrets.token_urlsafe(16),
        reference=f"HND-{int(order.id)}-{secrets.token_hex(4).upper()}",
        expirable_id=int(lifetime.id),
    )
    row.lifetime = lifetime
    db.session.add(row)
    order.qr_reference = row.reference
    return row


def token_for(order: Order) -> HandoffToken | None:
    return HandoffToken.query.filter_by(order_id=int(order.id)).first()


def matches(row: HandoffToken | None, token: str) -> bool:
    supplied = (token or "").strip()
    if row is None or not supplied:
        return False
    return hmac.compare_digest(row.token.encode("utf-8"), supplied.encode("utf-8"))


def _check_token(order: Order, token: str, now: datetime) -> HandoffToken:
    row = token_for(order)
    if not matches(row, token):
        raise InvalidToken("handoff token does not match this order", order_id=int(order.id))
    if row.invalidated_at is not None:
        raise InvalidToken("handoff token was invalidated", order_id=int(order.id))
    if row.lifetime is None or not row.lifetime.is_live(now):
        raise InvalidToken("handoff token has expired", order_id=int(order.id))
    return row


def consume(order: Order, token: str, *, stage: str, actor, now: datetime | None = None) -> HandoffToken:
    """Finalize one stage of the handoff for ``actor``.

    Pickup needs a courier-type role and, once a courier is assigned, that
    courier. Delivery needs the order's buyer and a completed pickup.
    """
    if stage not in STAGES:
        raise WrongStage(f"unknown stage {stage}")
    moment = now or datetime.utcnow()
    row = _check_token(order, token, moment)

    if stage == STAGE_PICKUP:
        if not actor.is_courier:
            raise RoleMismatch("pickup must be confirmed by a courier", stage=stage)
        tracking = DeliveryTracking.query.filter_by(order_id=int(order.id)).first()
        if tracking is not None and int(tracking.courier_id) != int(actor.user_id):
            raise RoleMismatch("pickup must be confirmed by the assigned courier", stage=stage)
        if row.pickup_consumed_at is not None:
            raise AlreadyConsumed("pickup already confirmed", stage=stage)
        row.pickup_consumed_at = moment
        row.pickup_consumed_by = int(actor.user_id)
        return row

    if actor.user_id is None or int(actor.user_id) != int(order.buyer_id):
        raise RoleMismatch("delivery must be confirmed by the buyer", stage=stage)
    if row.delivery_consumed_at is not None:
        raise AlreadyConsumed("delivery already confirmed", stage=stage)
    if row.pickup_consumed_at is None:
        raise WrongStage("delivery cannot be confirmed before pickup", stage=stage)
    row.delivery_consumed_at = moment
    row.delivery_consumed_by = int(actor.user_id)
    row.lifetime.is_active = False
    return row


def invalidate(order: Order, *, now: datetime | None = None) -> bool:
    row = token_for(order)
    if row is None or row.invalidated_at is not None:
        return False
    row.invalidated_at = now or datetime.utcnow()
    if row.lifetime is not None:
        row.lifetime.is_active = False
    return True

from __future__ import annotations

import calendar
import logging
from datetime import datetime

from handoff.config import ORDER_LIFETIME_MONTHS, default_match_radius_km, expired_order_policy, expiry_sweep_limit, location_staleness_seconds
from handoff.errors import (
    ConflictError,
    HandoffError,
    InvalidItems,
    Outcome,
    OrderNotFound,
    NotFoundError,
    RoleMismatch,
    SellerMismatch,
    ValidationError,
    WrongStage,
)
from handoff.extensions import db
from handoff.models import COURIER_ROLES, DeliveryTracking, ExpirableId, Order, OrderEvent, OrderItem, Product, Role, User, WalletTransaction
from handoff.services import escrow_wallet, location_feed, notifier, proximity_matcher, qr_validator
from handoff.services.commission_splitter import compute_split
from handoff.services.unit_of_work import run_atomic, run_outcome
from handoff.utils.job_runs import record_job_run
from handoff.utils.money import parse_currency, parse_minor, parse_positive_int

logger = logging.getLogger(__name__)


class OrderStatus:
    PLACED = "PLACED"
    PICKED = "PICKED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    ALLOWED = {
        PLACED: {PICKED, CANCELLED},
        PICKED: {DELIVERED, CANCELLED},
        DELIVERED: set(),
        CANCELLED: set(),
    }

    ACTIVE = (PLACED, PICKED)


def _now() -> datetime:
    return datetime.utcnow()


def _add_months(moment: datetime, months: int) -> datetime:
    """Calendar-month arithmetic; the day is clamped to the target month's length."""
    index = moment.month - 1 + int(months)
    year = moment.year + index // 12
    month = index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _load_order(order_id) -> Order:
    try:
        oid = int(order_id)
    except (TypeError, ValueError):
        raise OrderNotFound("order not found", order_id=order_id)
    order = db.session.get(Order, oid)
    if order is None:
        raise OrderNotFound("order not found", order_id=oid)
    return order


def _set_status(order: Order, to_state: str) -> None:
    current = (order.status or OrderStatus.PLACED).upper()
    if to_state not in OrderStatus.ALLOWED.get(current, set()):
        raise WrongStage(f"order cannot move from {current} to {to_state}", order_id=int(order.id), status=current)
    order.status = to_state


def _event_once(order: Order, event: str, *, actor_id: int | None, note: str = "", key: str | None = None) -> bool:
    idem = (key or f"order:{int(order.id)}:{event}")[:160]
    if OrderEvent.query.filter_by(idempotency_key=idem).first() is not None:
        return False
    db.session.add(
        OrderEvent(
            order_id=int(order.id),
            actor_user_id=actor_id,
            event=event,
            note=(note or "")[:240] or None,
            idempotency_key=idem,
        )
    )
    return True


def _flush_notifications(outbox: list) -> None:
    for user_ids, title, message, kind, data in outbox:
        notifier.notify_many(user_ids, title, message, kind, data)


def _require_user(actor) -> None:
    if actor is None or actor.user_id is None:
        raise RoleMismatch("an authenticated user is required")


def _parse_endpoint(raw, field: str) -> tuple[float, float, str] | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValidationError(f"{field} must be an object with latitude and longitude", field=field)
    lat = raw.get("latitude", raw.get("lat"))
    lng = raw.get("longitude", raw.get("lng"))
    if not proximity_matcher.valid_coordinates(lat, lng):
        raise ValidationError(f"{field} has invalid coordinates", field=field)
    return float(lat), float(lng), str(raw.get("address") or "")[:255]


def _parse_items(raw_items, *, seller_id: int, currency: str) -> list[tuple[Product, int]]:
    if not isinstance(raw_items, list) or not raw_items:
        raise InvalidItems("order must contain at least one item")
    lines = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise InvalidItems("each item must be an object", index=idx)
        try:
            product_id = parse_positive_int(raw.get("productId", raw.get("product_id")), field="productId")
            quantity = parse_positive_int(raw.get("quantity"), field="quantity")
        except ValidationError as err:
            raise InvalidItems(err.message, index=idx)
        product = db.session.get(Product, product_id)
        if product is None or not product.is_active:
            raise InvalidItems("product not found or inactive", index=idx, product_id=product_id)
        if int(product.seller_id) != int(seller_id):
            raise SellerMismatch("every item must belong to the seller", index=idx, product_id=product_id)
        item_currency = raw.get("currency")
        if product.currency != currency or (item_currency and str(item_currency).strip().upper() != currency):
            raise InvalidItems("item currency must match the order currency", index=idx, product_id=product_id)
        if raw.get("unitPrice") is not None:
            try:
                claimed = parse_minor(raw.get("unitPrice"), field="unitPrice")
            except ValidationError as err:
                raise InvalidItems(err.message, index=idx)
            if claimed != int(product.unit_price_minor):
                raise InvalidItems(
                    "unit price does not match the catalog",
                    index=idx,
                    product_id=product_id,
                    catalog_price=int(product.unit_price_minor),
                )
        lines.append((product, quantity))
    return lines


# Placement

def place_order(actor, payload: dict, *, now: datetime | None = None) -> Outcome:
    """Place an order and hold the buyer's funds in escrow.

    Validation, the escrow hold, the order rows and the handoff token are one
    transaction: a failure anywhere persists nothing.
    """
    payload = payload or {}

    def _op() -> dict:
        _require_user(actor)
        moment = now or _now()
        buyer_id = int(actor.user_id)
        seller_id = parse_positive_int(payload.get("sellerId", payload.get("seller_id")), field="sellerId")
        if seller_id == buyer_id:
            raise ValidationError("buyer and seller must differ", field="sellerId")
        if db.session.get(User, seller_id) is None:
            raise ValidationError("seller not found", field="sellerId")
        currency = parse_currency(payload.get("currency"))

        affiliate_id = None
        raw_affiliate = payload.get("affiliateId", payload.get("affiliate_id"))
        if raw_affiliate not in (None, ""):
            affiliate_id = parse_positive_int(raw_affiliate, field="affiliateId")
            if affiliate_id in (buyer_id, seller_id):
                raise ValidationError("affiliate cannot be the buyer or the seller", field="affiliateId")
            if db.session.get(User, affiliate_id) is None:
                raise ValidationError("affiliate not found", field="affiliateId")

        lines = _parse_items(payload.get("items"), seller_id=seller_id, currency=currency)
        pickup = _parse_endpoint(payload.get("pickup"), "pickup")
        dropoff = _parse_endpoint(payload.get("dropoff"), "dropoff")

        subtotal = sum(int(product.unit_price_minor) * qty for product, qty in lines)
        split = compute_split(subtotal, has_affiliate=affiliate_id is not None)

        order = Order(
            buyer_id=buyer_id,
            seller_id=seller_id,
            affiliate_id=affiliate_id,
            currency=currency,
            subtotal_minor=split.subtotal,
            platform_fee_minor=split.platform_fee,
            total_minor=split.total,
            affiliate_commission_minor=split.affiliate_commission,
            seller_net_minor=split.seller_net,
            platform_net_minor=split.platform_net,
            fee_bps=split.fee_bps,
            affiliate_share_bps=split.affiliate_share_bps,
            status=OrderStatus.PLACED,
            created_at=moment,
            updated_at=moment,
            expires_at=_add_months(moment, ORDER_LIFETIME_MONTHS),
        )
        if pickup is not None:
            order.pickup_lat, order.pickup_lng, order.pickup_address = pickup
        if dropoff is not None:
            order.dropoff_lat, order.dropoff_lng, order.dropoff_address = dropoff
        db.session.add(order)
        db.session.flush()

        for product, qty in lines:
            db.session.add(
                OrderItem(
                    order_id=int(order.id),
                    product_id=int(product.id),
                    quantity=qty,
                    unit_price_minor=int(product.unit_price_minor),
                    currency=product.currency,
                    line_total_minor=int(product.unit_price_minor) * qty,
                    title=(product.title or "")[:160],
                )
            )

        escrow_wallet.hold(order)
        token = qr_validator.issue(order)
        _event_once(order, "placed", actor_id=buyer_id, note=f"total={split.total} {currency}")
        db.session.flush()
        logger.info(
            "order_placed order_id=%s buyer_id=%s seller_id=%s total=%s currency=%s",
            int(order.id), buyer_id, seller_id, split.total, currency,
        )
        return {
            "orderId": int(order.id),
            "qrToken": token.token,
            "qrReference": token.reference,
            "totalCharged": split.total,
            "currency": currency,
            "status": OrderStatus.PLACED,
            "expiresAt": order.expires_at.isoformat(),
        }

    return run_outcome(_op, name="place_order", status=201)


def get_order(actor, order_id) -> Outcome:
    def _op() -> dict:
        _require_user(actor)
        order = _load_order(order_id)
        tracking = DeliveryTracking.query.filter_by(order_id=int(order.id)).first()
        uid = int(actor.user_id)
        is_courier = tracking is not None and int(tracking.courier_id) == uid
        if not (actor.is_admin or uid in order.participant_ids() or is_courier):
            raise OrderNotFound("order not found", order_id=int(order.id))
        payload = order.to_dict()
        payload["tracking"] = tracking.to_dict() if tracking is not None else None
        if actor.is_admin or uid in (int(order.buyer_id), int(order.seller_id)):
            row = qr_validator.token_for(order)
            payload["qr_token"] = row.token if row is not None and row.invalidated_at is None else None
        events = OrderEvent.query.filter_by(order_id=int(order.id)).order_by(OrderEvent.id.asc()).all()
        payload["events"] = [e.to_dict() for e in events]
        return {"order": payload}

    return run_outcome(_op, name="get_order")


# Courier assignment

def assign_courier(actor, order_id, courier_id) -> Outcome:
    outbox: list = []

    def _op() -> dict:
        outbox.clear()
        _require_user(actor)
        order = _load_order(order_id)
        if not (actor.is_admin or int(actor.user_id) == int(order.seller_id)):
            raise RoleMismatch("only the seller or an admin can assign a courier")
        cid = parse_positive_int(courier_id, field="courierId")
        courier = db.session.get(User, cid)
        if courier is None:
            raise NotFoundError("courier not found", courier_id=cid)
        if courier.role_enum not in COURIER_ROLES:
            raise RoleMismatch("assignee must have a courier role", courier_id=cid)
        if order.status != OrderStatus.PLACED:
            raise WrongStage("courier can only be assigned before pickup", status=order.status)

        tracking = DeliveryTracking.query.filter_by(order_id=int(order.id)).first()
        previous = int(tracking.courier_id) if tracking is not None else None
        if tracking is None:
            tracking = DeliveryTracking(order_id=int(order.id), seller_id=int(order.seller_id), buyer_id=int(order.buyer_id))
            db.session.add(tracking)
        tracking.courier_id = cid
        tracking.status = "assigned"
        tracking.pickup_lat, tracking.pickup_lng = order.pickup_lat, order.pickup_lng
        tracking.dropoff_lat, tracking.dropoff_lng = order.dropoff_lat, order.dropoff_lng
        _event_once(
            order,
            "courier_assigned",
            actor_id=int(actor.user_id),
            note=f"courier={cid}",
            key=f"order:{int(order.id)}:courier_assigned:{cid}",
        )
        if previous != cid:
            outbox.append(([cid], "New delivery", f"You were assigned order #{int(order.id)}.", "courier_assigned", {"order_id": int(order.id)}))
        return {"orderId": int(order.id), "courierId": cid, "tracking": tracking.to_dict()}

    outcome = run_outcome(_op, name="assign_courier")
    if outcome.ok:
        _flush_notifications(outbox)
    return outcome


def suggest_couriers(actor, order_id, *, origin=None, max_distance_km=None, role=None, now: datetime | None = None) -> Outcome:
    def _op() -> dict:
        _require_user(actor)
        order = _load_order(order_id)
        if not (actor.is_admin or int(actor.user_id) in order.participant_ids()):
            raise OrderNotFound("order not found", order_id=int(order.id))
        if origin is not None:
            point = origin
        elif order.pickup_lat is not None and order.pickup_lng is not None:
            point = (float(order.pickup_lat), float(order.pickup_lng))
        else:
            raise ValidationError("order has no pickup point; supply an origin", field="origin")
        if not proximity_matcher.valid_coordinates(point[0], point[1]):
            raise ValidationError("origin has invalid coordinates", field="origin")

        roles = COURIER_ROLES
        if role:
            parsed = Role.parse(role)
            if parsed not in COURIER_ROLES:
                raise ValidationError("role must be a courier role", field="role")
            roles = {parsed}
        radius = float(max_distance_km) if max_distance_km is not None else default_match_radius_km()
        if radius <= 0:
            raise ValidationError("max_km must be positive", field="max_km")

        moment = now or _now()
        staleness = location_staleness_seconds()
        pool = location_feed.candidates(roles, now=moment, max_staleness_seconds=staleness)
        ranked = proximity_matcher.rank(
            point,
            pool,
            max_distance_km=radius,
            max_staleness_seconds=staleness,
            now=moment,
            online_only=True,
        )
        return {
            "orderId": int(order.id),
            "origin": {"latitude": float(point[0]), "longitude": float(point[1])},
            "max_km": radius,
            "providers": [p.to_dict() for p in ranked],
        }

    return run_outcome(_op, name="suggest_couriers")


# Handoff confirmations

def confirm_pickup(actor, order_id, token: str, *, now: datetime | None = None) -> Outcome:
    outbox: list = []

    def _op() -> dict:
        outbox.clear()
        _require_user(actor)
        moment = now or _now()
        order = _load_order(order_id)
        qr_validator.consume(order, token, stage=qr_validator.STAGE_PICKUP, actor=actor, now=moment)
        _set_status(order, OrderStatus.PICKED)
        order.picked_at = moment

        tracking = DeliveryTracking.query.filter_by(order_id=int(order.id)).first()
        if tracking is None:
            # First courier to scan a token on an unassigned order takes it.
            tracking = DeliveryTracking(
                order_id=int(order.id),
                courier_id=int(actor.user_id),
                seller_id=int(order.seller_id),
                buyer_id=int(order.buyer_id),
                pickup_lat=order.pickup_lat,
                pickup_lng=order.pickup_lng,
                dropoff_lat=order.dropoff_lat,
                dropoff_lng=order.dropoff_lng,
            )
            db.session.add(tracking)
        tracking.status = "picked_up"
        _event_once(order, "picked_up", actor_id=int(actor.user_id))
        data = {"order_id": int(order.id), "courier_id": int(actor.user_id)}
        outbox.append(
            ([order.buyer_id, order.seller_id], "Order picked up", f"Order #{int(order.id)} is on its way.", "order_picked_up", data)
        )
        logger.info("order_picked_up order_id=%s courier_id=%s", int(order.id), int(actor.user_id))
        return {"orderId": int(order.id), "status": order.status}

    outcome = run_outcome(_op, name="confirm_pickup")
    if outcome.ok:
        _flush_notifications(outbox)
    return outcome


def confirm_delivery(actor, order_id, token: str, *, now: datetime | None = None) -> Outcome:
    outbox: list = []

    def _op() -> dict:
        outbox.clear()
        _require_user(actor)
        moment = now or _now()
        order = _load_order(order_id)
        if order.status == OrderStatus.DELIVERED:
            if int(actor.user_id) != int(order.buyer_id):
                raise RoleMismatch("delivery must be confirmed by the buyer", stage=qr_validator.STAGE_DELIVERY)
            if not qr_validator.matches(qr_validator.token_for(order), token):
                raise ConflictError("order already delivered", order_id=int(order.id))
            return {"orderId": int(order.id), "status": order.status, "replayed": True}

        qr_validator.consume(order, token, stage=qr_validator.STAGE_DELIVERY, actor=actor, now=moment)
        _set_status(order, OrderStatus.DELIVERED)
        order.delivered_at = moment
        settlement = escrow_wallet.release(order, actor=actor.audit())

        tracking = DeliveryTracking.query.filter_by(order_id=int(order.id)).first()
        if tracking is not None:
            tracking.status = "delivered"
        _event_once(order, "delivered", actor_id=int(actor.user_id))

        oid = int(order.id)
        outbox.append(([order.buyer_id], "Order delivered", f"Order #{oid} was delivered.", "order_delivered", {"order_id": oid}))
        outbox.append(
            (
                [order.seller_id],
                "Payment released",
                f"{int(order.seller_net_minor)} {order.currency} released for order #{oid}.",
                "escrow_released",
                {"order_id": oid, "amount": int(order.seller_net_minor), "currency": order.currency},
            )
        )
        if order.affiliate_id is not None and int(order.affiliate_commission_minor or 0) > 0:
            outbox.append(
                (
                    [order.affiliate_id],
                    "Commission earned",
                    f"{int(order.affiliate_commission_minor)} {order.currency} commission for order #{oid}.",
                    "commission_released",
                    {"order_id": oid, "amount": int(order.affiliate_commission_minor), "currency": order.currency},
                )
            )
        return {"orderId": oid, "status": order.status, "settlement": settlement}

    outcome = run_outcome(_op, name="confirm_delivery")
    if outcome.ok:
        _flush_notifications(outbox)
    return outcome


# Cancellation and expiry

def _cancel_order(
    order: Order,
    *,
    reason: str,
    actor_id: int | None,
    audit: dict,
    disposition: str,
    moment: datetime,
    resolution: bool = False,
) -> dict:
    event = "expired" if reason == "expired" else "cancelled"
    _set_status(order, OrderStatus.CANCELLED)
    order.cancel_reason = (reason or "cancelled")[:64]
    order.cancelled_by = actor_id
    order.cancelled_at = moment
    if disposition == "forfeit":
        settlement = escrow_wallet.forfeit(order, reason=reason)
    else:
        settlement = escrow_wallet.refund(order, actor=audit, reason=reason, resolution=resolution)
    qr_validator.invalidate(order, now=moment)
    tracking = DeliveryTracking.query.filter_by(order_id=int(order.id)).first()
    if tracking is not None:
        tracking.status = "cancelled"
    _event_once(order, event, actor_id=actor_id, note=reason)
    return settlement


def cancel(actor, order_id, reason: str = "") -> Outcome:
    outbox: list = []

    def _op() -> dict:
        outbox.clear()
        _require_user(actor)
        order = _load_order(order_id)
        uid = int(actor.user_id)
        if not (actor.is_admin or uid in (int(order.buyer_id), int(order.seller_id))):
            raise RoleMismatch("only the buyer, the seller or an admin can cancel")
        if order.status == OrderStatus.CANCELLED:
            return {"orderId": int(order.id), "status": order.status, "replayed": True}
        text = (reason or "").strip()[:64] or "cancelled"
        settlement = _cancel_order(order, reason=text, actor_id=uid, audit=actor.audit(), disposition="refund", moment=_now())

        tracking = DeliveryTracking.query.filter_by(order_id=int(order.id)).first()
        recipients = {int(order.buyer_id), int(order.seller_id)}
        if tracking is not None:
            recipients.add(int(tracking.courier_id))
        recipients.discard(uid)
        outbox.append(
            (recipients, "Order cancelled", f"Order #{int(order.id)} was cancelled.", "order_cancelled", {"order_id": int(order.id), "reason": text})
        )
        logger.info("order_cancelled order_id=%s by=%s reason=%s", int(order.id), uid, text)
        return {"orderId": int(order.id), "status": order.status, "settlement": settlement}

    outcome = run_outcome(_op, name="cancel_order")
    if outcome.ok:
        _flush_notifications(outbox)
    return outcome


# Disputes

DISPUTE_RESOLUTIONS = ("refund", "release")


def open_dispute(actor, order_id, reason: str = "") -> Outcome:
    """Put a held order's escrow on hold for admin review.

    While disputed, delivery, cancellation and the expiry sweep cannot settle
    the escrow; only ``resolve_dispute`` can.
    """
    outbox: list = []

    def _op() -> dict:
        outbox.clear()
        _require_user(actor)
        order = _load_order(order_id)
        uid = int(actor.user_id)
        if not (actor.is_admin or uid in (int(order.buyer_id), int(order.seller_id))):
            raise RoleMismatch("only the buyer, the seller or an admin can open a dispute")
        if order.escrow_status == escrow_wallet.EscrowStatus.DISPUTED:
            return {"orderId": int(order.id), "status": order.status, "escrowStatus": order.escrow_status, "replayed": True}
        if order.status not in OrderStatus.ACTIVE:
            raise WrongStage("only an active order can be disputed", order_id=int(order.id), status=order.status)
        text = (reason or "").strip()[:240]
        if not text:
            raise ValidationError("a dispute reason is required", field="reason")

        moment = _now()
        escrow_wallet.open_dispute(order, actor=actor.audit(), reason=text)
        order.dispute_reason = text
        order.dispute_opened_by = uid
        order.disputed_at = moment
        _event_once(order, "dispute_opened", actor_id=uid, note=text)

        oid = int(order.id)
        recipients = {int(order.buyer_id), int(order.seller_id)}
        recipients.discard(uid)
        outbox.append(
            (recipients, "Order disputed", f"Payment for order #{oid} is on hold pending review.", "escrow_disputed", {"order_id": oid, "reason": text})
        )
        logger.warning("order_disputed order_id=%s by=%s", oid, uid)
        return {"orderId": oid, "status": order.status, "escrowStatus": order.escrow_status}

    outcome = run_outcome(_op, name="open_dispute")
    if outcome.ok:
        _flush_notifications(outbox)
    return outcome


def resolve_dispute(actor, order_id, resolution: str, note: str = "") -> Outcome:
    """Settle a disputed escrow by refunding the buyer or releasing to the seller.

    Repeating the same decision is a replay; a different decision on an
    already resolved dispute is a conflict.
    """
    outbox: list = []

    def _op() -> dict:
        outbox.clear()
        _require_user(actor)
        if not actor.is_admin:
            raise RoleMismatch("only an admin can resolve a dispute")
        choice = (resolution or "").strip().lower()
        if choice not in DISPUTE_RESOLUTIONS:
            raise ValidationError("resolution must be refund or release", field="resolution")
        order = _load_order(order_id)
        if order.dispute_resolution:
            if order.dispute_resolution != choice:
                raise ConflictError("dispute already resolved", order_id=int(order.id), resolution=order.dispute_resolution)
            return {"orderId": int(order.id), "status": order.status, "resolution": choice, "replayed": True}
        if order.escrow_status != escrow_wallet.EscrowStatus.DISPUTED:
            raise WrongStage("order has no open dispute", order_id=int(order.id), escrow_status=order.escrow_status)

        uid = int(actor.user_id)
        moment = _now()
        text = (note or "").strip()[:240]
        if choice == "refund":
            settlement = _cancel_order(
                order,
                reason="dispute_refund",
                actor_id=uid,
                audit=actor.audit(),
                disposition="refund",
                moment=moment,
                resolution=True,
            )
        else:
            if order.status != OrderStatus.PICKED:
                raise WrongStage("escrow can only be released to the seller after pickup", order_id=int(order.id), status=order.status)
            _set_status(order, OrderStatus.DELIVERED)
            order.delivered_at = moment
            settlement = escrow_wallet.release(order, actor=actor.audit(), reason="dispute_release", resolution=True)
            qr_validator.invalidate(order, now=moment)
            tracking = DeliveryTracking.query.filter_by(order_id=int(order.id)).first()
            if tracking is not None:
                tracking.status = "delivered"

        order.dispute_resolution = choice
        order.dispute_note = text or None
        order.dispute_resolved_by = uid
        order.dispute_resolved_at = moment
        _event_once(order, "dispute_resolved", actor_id=uid, note=f"{choice}: {text}" if text else choice)

        oid = int(order.id)
        outbox.append(
            (
                [order.buyer_id, order.seller_id],
                "Dispute resolved",
                f"The dispute on order #{oid} was resolved: {choice}.",
                "dispute_resolved",
                {"order_id": oid, "resolution": choice},
            )
        )
        logger.info("dispute_resolved order_id=%s by=%s resolution=%s", oid, uid, choice)
        return {"orderId": oid, "status": order.status, "resolution": choice, "settlement": settlement}

    outcome = run_outcome(_op, name="resolve_dispute")
    if outcome.ok:
        _flush_notifications(outbox)
    return outcome


def _expire_one(order_id: int, *, policy: str, moment: datetime) -> bool:
    order = db.session.get(Order, int(order_id))
    if order is None or order.status not in OrderStatus.ACTIVE or order.expires_at > moment:
        return False
    if order.escrow_status == escrow_wallet.EscrowStatus.DISPUTED:
        return False
    _cancel_order(order, reason="expired", actor_id=None, audit={"type": "system"}, disposition=policy, moment=moment)
    return True


def _cancel_topup(txn_id: int) -> bool:
    txn = db.session.get(WalletTransaction, int(txn_id))
    if txn is None:
        return False
    return escrow_wallet.cancel_pending_topup(txn)


def expire_stale(*, now: datetime | None = None, limit: int | None = None) -> Outcome:
    """Cancel active orders past their expiry and pending top-ups past their TTL.

    Each row is its own transaction so one failure does not stop the sweep.
    """
    started = _now()
    moment = now or started
    cap = int(limit or expiry_sweep_limit())
    policy = expired_order_policy()

    order_ids = [
        row.id
        for row in db.session.query(Order.id)
        .filter(
            Order.status.in_(OrderStatus.ACTIVE),
            Order.escrow_status != escrow_wallet.EscrowStatus.DISPUTED,
            Order.expires_at <= moment,
        )
        .order_by(Order.expires_at.asc(), Order.id.asc())
        .limit(cap)
        .all()
    ]
    expired = 0
    failed = 0
    errors: list[str] = []
    for oid in order_ids:
        try:
            if run_atomic(lambda oid=oid: _expire_one(oid, policy=policy, moment=moment), name="expire_order"):
                expired += 1
        except HandoffError as err:
            failed += 1
            errors.append(f"order:{oid}:{err.code}")
            logger.warning("order_expiry_failed order_id=%s code=%s message=%s", oid, err.code, err.message)
        except Exception as exc:
            failed += 1
            errors.append(f"order:{oid}:{type(exc).__name__}")
            logger.exception("order_expiry_crashed order_id=%s", oid)

    lifetimes = (
        ExpirableId.query.filter(
            ExpirableId.id_type == "payment",
            ExpirableId.entity_type == "wallet_transaction",
            ExpirableId.is_active.is_(True),
            ExpirableId.expires_at <= moment,
        )
        .order_by(ExpirableId.expires_at.asc())
        .limit(cap)
        .all()
    )
    topup_ids = [int(row.entity_id) for row in lifetimes]
    topups_cancelled = 0
    for tid in topup_ids:
        try:
            if run_atomic(lambda tid=tid: _cancel_topup(tid), name="expire_topup"):
                topups_cancelled += 1
        except Exception as exc:
            failed += 1
            errors.append(f"topup:{tid}:{type(exc).__name__}")
            logger.exception("topup_expiry_crashed txn_id=%s", tid)

    summary = {
        "policy": policy,
        "scanned": len(order_ids),
        "expired": expired,
        "topups_scanned": len(topup_ids),
        "topups_cancelled": topups_cancelled,
        "failed": failed,
    }
    record_job_run(
        job_name="expiry_sweep",
        ok=failed == 0,
        started_at=started,
        processed=len(order_ids) + len(topup_ids),
        affected=expired + topups_cancelled,
        error="; ".join(errors) or None,
    )
    logger.info("expiry_sweep_done %s", " ".join(f"{k}={v}" for k, v in summary.items()))
    return Outcome.success(summary)

from __future__ import annotations

import secrets
from datetime import datetime, timedelta

from flask import current_app

from handoff.config import topup_ttl_hours
from handoff.errors import ConflictError, EscrowDisputed, InsufficientFunds, NotFoundError, ValidationError, WalletFrozen
from handoff.extensions import db
from handoff.models import EscrowTransition, ExpirableId, Order, User, Wallet, WalletTransaction
from handoff.services.commission_splitter import transfer_fee
from handoff.utils.money import parse_currency, parse_minor

PLATFORM_OWNER_KEY = "platform"

RELEASE_ON_DELIVERY = "delivery_confirmed"
RELEASE_MANUAL = "manual"


class EscrowStatus:
    NONE = "NONE"
    HELD = "HELD"
    DISPUTED = "DISPUTED"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    FORFEITED = "FORFEITED"

    ALLOWED = {
        NONE: {HELD},
        HELD: {DISPUTED, RELEASED, REFUNDED, FORFEITED},
        DISPUTED: {RELEASED, REFUNDED},
        RELEASED: set(),
        REFUNDED: set(),
        FORFEITED: set(),
    }


class TxnStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _now() -> datetime:
    return datetime.utcnow()


# Wallet lookup

def _owner_key(user_id: int) -> str:
    return f"user:{int(user_id)}"


def _get_or_create(owner_key: str, *, user_id: int | None, kind: str, currency: str) -> Wallet:
    wallet = Wallet.query.filter_by(owner_key=owner_key, currency=currency).first()
    if wallet is None:
        wallet = Wallet(owner_key=owner_key, user_id=user_id, kind=kind, currency=currency, balance_minor=0)
        db.session.add(wallet)
        db.session.flush()
    return wallet


def find_user_wallet(user_id: int, currency: str) -> Wallet | None:
    return Wallet.query.filter_by(owner_key=_owner_key(user_id), currency=currency).first()


def user_wallet(user_id: int, currency: str) -> Wallet:
    return _get_or_create(_owner_key(user_id), user_id=int(user_id), kind="user", currency=currency)


def platform_wallet(currency: str) -> Wallet:
    return _get_or_create(PLATFORM_OWNER_KEY, user_id=None, kind="platform", currency=currency)


# Balance mutation. Every change bumps Wallet.version, so a concurrent writer
# fails its flush with StaleDataError and the unit of work is retried.

def _debit(wallet: Wallet, amount: int) -> None:
    if wallet.is_frozen:
        raise WalletFrozen("wallet is frozen", wallet_id=int(wallet.id))
    balance = int(wallet.balance_minor or 0)
    if balance < amount:
        raise InsufficientFunds(
            "insufficient wallet balance",
            balance=balance,
            required=int(amount),
            currency=wallet.currency,
        )
    wallet.balance_minor = balance - int(amount)
    wallet.updated_at = _now()


def _credit(wallet: Wallet, amount: int) -> None:
    wallet.balance_minor = int(wallet.balance_minor or 0) + int(amount)
    wallet.updated_at = _now()


def _record(
    *,
    source: Wallet | None,
    destination: Wallet | None,
    amount: int,
    currency: str,
    purpose: str,
    status: str = TxnStatus.COMPLETED,
    order: Order | None = None,
    idempotency_key: str | None = None,
    note: str = "",
    **extra,
) -> WalletTransaction:
    now = _now()
    txn = WalletTransaction(
        source_wallet_id=int(source.id) if source is not None else None,
        destination_wallet_id=int(destination.id) if destination is not None else None,
        amount_minor=int(amount),
        currency=currency,
        purpose=purpose,
        status=status,
        order_id=int(order.id) if order is not None else None,
        idempotency_key=idempotency_key,
        note=(note or "")[:240] or None,
        created_at=now,
        completed_at=now if status == TxnStatus.COMPLETED else None,
        **extra,
    )
    db.session.add(txn)
    return txn


# Escrow

def _transition(order: Order, to_state: str, *, key: str, amount: int, actor: dict | None = None, reason: str = "") -> None:
    current = (order.escrow_status or EscrowStatus.NONE).upper()
    if to_state not in EscrowStatus.ALLOWED.get(current, set()):
        raise ConflictError(f"escrow cannot move from {current} to {to_state}", order_id=int(order.id))
    actor = actor or {}
    db.session.add(
        EscrowTransition(
            order_id=int(order.id),
            from_status=current,
            to_status=to_state,
            amount_minor=int(amount),
            actor_type=str(actor.get("type") or "system")[:32],
            actor_id=actor.get("id"),
            idempotency_key=key[:160],
            reason=(reason or "")[:240] or None,
        )
    )
    order.escrow_status = to_state


def _settle_key(order: Order) -> str:
    # Release, refund and forfeit share one key so only one of them can ever commit.
    return f"settle:{int(order.id)}"


def _guard_dispute(order: Order, resolution: bool) -> None:
    status = (order.escrow_status or EscrowStatus.NONE).upper()
    if status == EscrowStatus.DISPUTED and not resolution:
        raise EscrowDisputed("escrow is under dispute and awaits an admin decision", order_id=int(order.id))


def hold(order: Order, *, release_date: datetime | None = None) -> WalletTransaction:
    """Debit the buyer for the order total and hold it against the order."""
    if order.id is None:
        db.session.flush()
    amount = int(order.total_minor or 0)
    if amount <= 0:
        raise ValidationError("order total must be positive")
    wallet = find_user_wallet(int(order.buyer_id), order.currency)
    if wallet is None:
        raise InsufficientFunds("insufficient wallet balance", balance=0, required=amount, currency=order.currency)
    _debit(wallet, amount)
    txn = _record(
        source=wallet,
        destination=None,
        amount=amount,
        currency=order.currency,
        purpose="payment",
        order=order,
        idempotency_key=f"hold:{int(order.id)}",
        note=f"Escrow hold for order #{int(order.id)}",
        escrow_enabled=True,
        escrow_release_condition=RELEASE_ON_DELIVERY,
        escrow_release_date=release_date or order.expires_at,
    )
    _transition(order, EscrowStatus.HELD, key=f"hold:{int(order.id)}", amount=amount, reason="order_placed")
    order.escrow_held_at = _now()
    return txn


def _held_transaction(order: Order) -> WalletTransaction:
    txn = WalletTransaction.query.filter_by(idempotency_key=f"hold:{int(order.id)}").first()
    if txn is None:
        raise ConflictError("no escrow hold recorded for order", order_id=int(order.id))
    return txn


def open_dispute(order: Order, *, actor: dict | None = None, reason: str = "") -> dict:
    """Freeze a held amount until an admin resolves it.

    The hold's release condition switches to ``manual``: neither delivery nor
    the expiry sweep can settle it afterwards.
    """
    status = (order.escrow_status or EscrowStatus.NONE).upper()
    if status == EscrowStatus.DISPUTED:
        return {"disputed": False, "replayed": True}
    held = _held_transaction(order)
    _transition(order, EscrowStatus.DISPUTED, key=f"dispute:{int(order.id)}", amount=int(held.amount_minor), actor=actor, reason=reason)
    held.escrow_release_condition = RELEASE_MANUAL
    current_app.logger.warning("escrow_disputed order_id=%s amount=%s currency=%s", int(order.id), int(held.amount_minor), order.currency)
    return {"disputed": True, "amount": int(held.amount_minor)}


def release(order: Order, *, actor: dict | None = None, reason: str = "delivery_confirmed", resolution: bool = False) -> dict:
    """Credit seller, affiliate and platform from the held amount, exactly once.

    A disputed hold is only released when ``resolution`` is set by the admin
    resolving the dispute.
    """
    status = (order.escrow_status or EscrowStatus.NONE).upper()
    if status == EscrowStatus.RELEASED:
        return {"released": False, "replayed": True}
    _guard_dispute(order, resolution)
    held = _held_transaction(order)
    seller_net = int(order.seller_net_minor or 0)
    affiliate_cut = int(order.affiliate_commission_minor or 0)
    platform_net = int(order.platform_net_minor or 0)
    if seller_net + affiliate_cut + platform_net != int(held.amount_minor):
        raise ConflictError("escrow split does not match held amount", order_id=int(order.id))

    _transition(order, EscrowStatus.RELEASED, key=_settle_key(order), amount=int(held.amount_minor), actor=actor, reason=reason)
    ref = int(order.id)
    if seller_net > 0:
        seller = user_wallet(int(order.seller_id), order.currency)
        _credit(seller, seller_net)
        _record(source=None, destination=seller, amount=seller_net, currency=order.currency, purpose="payment",
                order=order, idempotency_key=f"release:{ref}:seller", note=f"Sale proceeds for order #{ref}")
    if affiliate_cut > 0 and order.affiliate_id is not None:
        affiliate = user_wallet(int(order.affiliate_id), order.currency)
        _credit(affiliate, affiliate_cut)
        _record(source=None, destination=affiliate, amount=affiliate_cut, currency=order.currency, purpose="commission",
                order=order, idempotency_key=f"release:{ref}:affiliate", note=f"Affiliate commission for order #{ref}")
    if platform_net > 0:
        platform = platform_wallet(order.currency)
        _credit(platform, platform_net)
        _record(source=None, destination=platform, amount=platform_net, currency=order.currency, purpose="commission",
                order=order, idempotency_key=f"release:{ref}:platform", note=f"Platform fee for order #{ref}")
    held.escrow_settled_at = _now()
    order.escrow_released_at = _now()
    current_app.logger.info(
        "escrow_released order_id=%s seller=%s affiliate=%s platform=%s currency=%s",
        ref, seller_net, affiliate_cut, platform_net, order.currency,
    )
    return {"released": True, "seller": seller_net, "affiliate": affiliate_cut, "platform": platform_net}


def refund(order: Order, *, actor: dict | None = None, reason: str = "", resolution: bool = False) -> dict:
    """Return the full held amount to the buyer, exactly once."""
    status = (order.escrow_status or EscrowStatus.NONE).upper()
    if status == EscrowStatus.REFUNDED:
        return {"refunded": False, "replayed": True}
    _guard_dispute(order, resolution)
    held = _held_transaction(order)
    amount = int(held.amount_minor)
    _transition(order, EscrowStatus.REFUNDED, key=_settle_key(order), amount=amount, actor=actor, reason=reason)
    buyer = user_wallet(int(order.buyer_id), order.currency)
    _credit(buyer, amount)
    _record(source=None, destination=buyer, amount=amount, currency=order.currency, purpose="refund",
            order=order, idempotency_key=f"refund:{int(order.id)}", note=f"Escrow refund for order #{int(order.id)}")
    held.escrow_settled_at = _now()
    order.escrow_refunded_at = _now()
    current_app.logger.info("escrow_refunded order_id=%s amount=%s currency=%s", int(order.id), amount, order.currency)
    return {"refunded": True, "amount": amount}


def forfeit(order: Order, *, reason: str = "expired") -> dict:
    """Move the full held amount to the platform ledger, exactly once."""
    status = (order.escrow_status or EscrowStatus.NONE).upper()
    if status == EscrowStatus.FORFEITED:
        return {"forfeited": False, "replayed": True}
    _guard_dispute(order, False)
    held = _held_transaction(order)
    amount = int(held.amount_minor)
    _transition(order, EscrowStatus.FORFEITED, key=_settle_key(order), amount=amount, reason=reason)
    platform = platform_wallet(order.currency)
    _credit(platform, amount)
    _record(source=None, destination=platform, amount=amount, currency=order.currency, purpose="commission",
            order=order, idempotency_key=f"forfeit:{int(order.id)}", note=f"Forfeited hold for order #{int(order.id)}")
    held.escrow_settled_at = _now()
    current_app.logger.warning("escrow_forfeited order_id=%s amount=%s currency=%s", int(order.id), amount, order.currency)
    return {"forfeited": True, "amount": amount}


# External funding

def fund(user_id: int, amount, currency, external_ref: str, *, ttl_hours: int | None = None) -> WalletTransaction:
    """Open a pending top-up that a payment-provider callback later settles."""
    amount_minor = parse_minor(amount)
    code = parse_currency(currency)
    ref = (external_ref or "").strip()
    if not ref:
        raise ValidationError("external reference is required", field="external_ref")
    if WalletTransaction.query.filter_by(external_ref=ref).first() is not None:
        raise ConflictError("external reference already used", external_ref=ref)
    wallet = user_wallet(int(user_id), code)
    txn = _record(
        source=None,
        destination=wallet,
        amount=amount_minor,
        currency=code,
        purpose="topup",
        status=TxnStatus.PENDING,
        external_ref=ref,
        note="Wallet top-up",
    )
    db.session.flush()
    hours = int(ttl_hours if ttl_hours is not None else topup_ttl_hours())
    db.session.add(
        ExpirableId(
            public_id=f"pay_{secrets.token_hex(12)}",
            id_type="payment",
            entity_type="wallet_transaction",
            entity_id=int(txn.id),
            expires_at=_now() + timedelta(hours=hours),
            is_active=True,
        )
    )
    return txn


def _deactivate_payment_lifetime(txn: WalletTransaction) -> None:
    ExpirableId.query.filter_by(
        id_type="payment", entity_type="wallet_transaction", entity_id=int(txn.id)
    ).update({"is_active": False})


def settle(external_ref: str, *, success: bool, external_txn_id: str | None = None) -> str:
    """Finalize a pending top-up. Anything not pending is left untouched."""
    txn = WalletTransaction.query.filter_by(external_ref=(external_ref or "").strip()).first()
    if txn is None or txn.status != TxnStatus.PENDING:
        return "ignored"
    if external_txn_id:
        txn.external_txn_id = str(external_txn_id)[:128]
    _deactivate_payment_lifetime(txn)
    if not success:
        txn.status = TxnStatus.FAILED
        return "marked_failed"
    wallet = db.session.get(Wallet, int(txn.destination_wallet_id))
    if wallet is None:
        raise NotFoundError("destination wallet missing", wallet_id=txn.destination_wallet_id)
    _credit(wallet, int(txn.amount_minor))
    txn.status = TxnStatus.COMPLETED
    txn.completed_at = _now()
    current_app.logger.info("topup_settled ref=%s wallet_id=%s amount=%s", txn.external_ref, int(wallet.id), int(txn.amount_minor))
    return "credited"


def cancel_pending_topup(txn: WalletTransaction) -> bool:
    _deactivate_payment_lifetime(txn)
    if txn.status != TxnStatus.PENDING:
        return False
    txn.status = TxnStatus.CANCELLED
    return True


# Wallet-to-wallet

def transfer(sender_id: int, recipient_id: int, amount, currency, *, purpose: str = "transfer", note: str = "") -> dict:
    purpose = (purpose or "transfer").strip().lower()
    if purpose not in ("transfer", "tip"):
        raise ValidationError("purpose must be transfer or tip", field="purpose")
    if int(sender_id) == int(recipient_id):
        raise ValidationError("cannot transfer to yourself", field="recipientId")
    amount_minor = parse_minor(amount)
    code = parse_currency(currency)
    if db.session.get(User, int(recipient_id)) is None:
        raise NotFoundError("recipient not found", recipient_id=int(recipient_id))

    fee = transfer_fee(amount_minor)
    sender = find_user_wallet(int(sender_id), code)
    if sender is None:
        raise InsufficientFunds("insufficient wallet balance", balance=0, required=amount_minor + fee, currency=code)
    recipient = user_wallet(int(recipient_id), code)
    if recipient.is_frozen:
        raise WalletFrozen("recipient wallet is frozen", wallet_id=int(recipient.id))
    _debit(sender, amount_minor + fee)
    _credit(recipient, amount_minor)
    main = _record(source=sender, destination=recipient, amount=amount_minor, currency=code, purpose=purpose, note=note)
    if fee > 0:
        platform = platform_wallet(code)
        _credit(platform, fee)
        _record(source=sender, destination=platform, amount=fee, currency=code, purpose="commission", note="Transfer fee")
    db.session.flush()
    return {
        "transaction_id": int(main.id),
        "amount": amount_minor,
        "fee": fee,
        "currency": code,
        "purpose": purpose,
        "balance": int(sender.balance_minor),
    }


def withdraw(user_id: int, amount, currency, *, destination: str) -> dict:
    amount_minor = parse_minor(amount)
    code = parse_currency(currency)
    target = (destination or "").strip()
    if not target:
        raise ValidationError("destination is required", field="destination")
    wallet = find_user_wallet(int(user_id), code)
    if wallet is None:
        raise InsufficientFunds("insufficient wallet balance", balance=0, required=amount_minor, currency=code)
    _debit(wallet, amount_minor)
    txn = _record(source=wallet, destination=None, amount=amount_minor, currency=code, purpose="withdrawal",
                  note=f"Payout to {target}")
    db.session.flush()
    return {"transaction_id": int(txn.id), "amount": amount_minor, "currency": code, "balance": int(wallet.balance_minor)}


def wallet_summary(user_id: int, *, limit: int = 20) -> list[dict]:
    wallets = Wallet.query.filter_by(owner_key=_owner_key(user_id)).order_by(Wallet.currency.asc()).all()
    out = []
    for wallet in wallets:
        recent = (
            WalletTransaction.query.filter(
                (WalletTransaction.source_wallet_id == wallet.id) | (WalletTransaction.destination_wallet_id == wallet.id)
            )
            .order_by(WalletTransaction.id.desc())
            .limit(int(limit))
            .all()
        )
        row = wallet.to_dict()
        row["transactions"] = [dict(t.to_dict(), direction=t.direction_for(int(wallet.id))) for t in recent]
        out.append(row)
    return out

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from handoff.config import payment_provider_name, payment_webhook_queue, payment_webhook_secret
from handoff.errors import InvalidSignature, ValidationError
from handoff.extensions import db
from handoff.models import WalletTransaction, WebhookEvent
from handoff.services import escrow_wallet
from handoff.services.unit_of_work import run_atomic
from handoff.utils.money import parse_minor

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = ("success", "completed")
FAILURE_STATUSES = ("failed", "cancelled")


def sign(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw or b"", hashlib.sha256).hexdigest()


def verify_signature(raw: bytes, signature: str | None, secret: str) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign(raw, secret), signature.strip().lower())


def _parse(raw: bytes) -> dict:
    try:
        payload = json.loads((raw or b"").decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("payload must be a JSON object")
    if not isinstance(payload, dict):
        raise ValidationError("payload must be a JSON object")
    event_id = str(payload.get("transaction_id") or "").strip()
    if not event_id:
        raise ValidationError("transaction_id is required", field="transaction_id")
    return payload


def _amount_or_none(raw):
    try:
        return parse_minor(raw)
    except ValidationError:
        return None


def _fill(row: WebhookEvent, payload: dict, raw: bytes, request_id: str | None) -> None:
    row.reference = str(payload.get("reference") or "").strip()[:128] or None
    row.amount_minor = _amount_or_none(payload.get("amount"))
    row.currency = str(payload.get("currency") or "").strip().upper()[:3] or None
    row.provider_status = str(payload.get("status") or "").strip().lower()[:32] or None
    row.payload_json = (raw or b"").decode("utf-8", errors="replace")
    row.payload_hash = hashlib.sha256(raw or b"").hexdigest()
    row.request_id = (request_id or "")[:64] or None


def _record(payload: dict, raw: bytes, *, status: str, request_id: str | None) -> WebhookEvent | None:
    """Persist a verified event before any balance mutation. Returns None for an already-processed id."""
    event_id = str(payload.get("transaction_id")).strip()[:128]
    row = WebhookEvent.query.filter_by(event_id=event_id).first()
    if row is not None and row.status == "processed":
        return None
    if row is None:
        row = WebhookEvent(provider=payment_provider_name(), event_id=event_id)
        db.session.add(row)
    _fill(row, payload, raw, request_id)
    row.status = status
    row.error = None
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        row = WebhookEvent.query.filter_by(event_id=event_id).first()
        if row is None or row.status == "processed":
            return None
    return row


def _record_rejection(payload: dict, raw: bytes, *, request_id: str | None, error: str) -> None:
    """Keep an audit row for an unverified request.

    An existing row for the same event id is never touched: its payload may
    be the provider's signed one and only a verified request can replace it.
    """
    event_id = str(payload.get("transaction_id")).strip()[:128]
    if WebhookEvent.query.filter_by(event_id=event_id).first() is not None:
        logger.warning("payment_webhook_rejected_existing event_id=%s request_id=%s", event_id, request_id)
        return
    row = WebhookEvent(provider=payment_provider_name(), event_id=event_id)
    _fill(row, payload, raw, request_id)
    row.status = "rejected"
    row.error = error
    db.session.add(row)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()


def _signature_ok(raw: bytes, signature: str | None) -> tuple[bool, str]:
    secret = payment_webhook_secret()
    if secret:
        return verify_signature(raw, signature, secret), "webhook signature verification failed"
    # Only the mock provider may post unsigned callbacks.
    if payment_provider_name() == "mock":
        return True, ""
    return False, "webhook secret is not configured"


def receive(raw: bytes, signature: str | None, *, request_id: str | None = None) -> tuple[dict, int]:
    """Entry point for a provider callback. Returns (body, http_status)."""
    try:
        payload = _parse(raw)
    except ValidationError as err:
        return {"ok": False, "error": "INVALID_PAYLOAD", "message": err.message}, 400
    event_id = str(payload.get("transaction_id")).strip()

    verified, reason = _signature_ok(raw, signature)
    if not verified:
        err = InvalidSignature(reason, event_id=event_id)
        _record_rejection(payload, raw, request_id=request_id, error=err.code)
        logger.warning("payment_webhook_rejected event_id=%s reason=%s request_id=%s", event_id, reason, request_id)
        return err.to_dict(), err.status

    row = _record(payload, raw, status="received", request_id=request_id)
    if row is None:
        existing = WebhookEvent.query.filter_by(event_id=event_id).first()
        return {"ok": True, "replayed": True, "outcome": existing.outcome if existing else None}, 200

    if payment_webhook_queue():
        try:
            from handoff.tasks.settlement_tasks import process_payment_webhook_task

            process_payment_webhook_task.delay(event_row_id=int(row.id), trace_id=request_id)
            return {"ok": True, "queued": True, "event_id": event_id}, 200
        except Exception:
            logger.exception("payment_webhook_enqueue_failed event_id=%s", event_id)

    return process(int(row.id))


def _decide(row: WebhookEvent) -> str:
    txn = WalletTransaction.query.filter_by(external_ref=row.reference, purpose="topup").first() if row.reference else None
    if txn is None or txn.status != escrow_wallet.TxnStatus.PENDING:
        return "ignored"
    if row.amount_minor is None or int(row.amount_minor) != int(txn.amount_minor) or (row.currency or "") != txn.currency:
        logger.warning(
            "payment_webhook_amount_mismatch event_id=%s expected=%s %s got=%s %s",
            row.event_id, txn.amount_minor, txn.currency, row.amount_minor, row.currency,
        )
        return "amount_mismatch"
    status = (row.provider_status or "").lower()
    if status in SUCCESS_STATUSES:
        return escrow_wallet.settle(row.reference, success=True, external_txn_id=row.event_id)
    if status in FAILURE_STATUSES:
        return escrow_wallet.settle(row.reference, success=False, external_txn_id=row.event_id)
    return "noted"


def process(event_row_id: int) -> tuple[dict, int]:
    """Apply a recorded event to the wallet ledger, at most once per event id."""

    def _apply() -> dict:
        row = db.session.get(WebhookEvent, int(event_row_id))
        if row is None:
            return {"ok": False, "error": "EVENT_NOT_FOUND"}
        if row.status == "processed":
            return {"ok": True, "replayed": True, "outcome": row.outcome}
        outcome = _decide(row)
        row.status = "processed"
        row.outcome = outcome
        row.processed_at = datetime.utcnow()
        row.error = None
        return {"ok": True, "event_id": row.event_id, "outcome": outcome}

    try:
        body = run_atomic(_apply, name="payment_webhook")
    except Exception as exc:
        logger.exception("payment_webhook_processing_failed event_row_id=%s", event_row_id)
        row = db.session.get(WebhookEvent, int(event_row_id))
        if row is not None:
            row.status = "failed"
            row.error = f"{type(exc).__name__}: {exc}"[:1000]
            db.session.commit()
        return {"ok": False, "error": "WEBHOOK_PROCESSING_FAILED", "message": type(exc).__name__}, 200
    logger.info("payment_webhook_processed event_row_id=%s outcome=%s", event_row_id, body.get("outcome"))
    return body, 200

from __future__ import annotations

import secrets

from flask import Blueprint, current_app, jsonify, request

from handoff.errors import ExternalServiceError
from handoff.extensions import db
from handoff.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from handoff.integrations.payments.factory import build_payments_provider
from handoff.models import User, WalletTransaction
from handoff.services import escrow_wallet
from handoff.services.unit_of_work import run_atomic, run_outcome
from handoff.utils.actors import current_actor
from handoff.utils.idempotency import lookup_response, store_response
from handoff.utils.observability import get_request_id

wallets_bp = Blueprint("wallets_bp", __name__, url_prefix="/api/wallet")


def _error_body(err) -> dict:
    body = err.to_dict()
    body["trace_id"] = get_request_id()
    return body


@wallets_bp.get("")
def get_wallet():
    actor = current_actor()
    if not actor:
        return jsonify({"message": "Unauthorized"}), 401
    try:
        limit = max(1, min(int(request.args.get("limit") or 20), 100))
    except ValueError:
        limit = 20
    return jsonify({"ok": True, "wallets": escrow_wallet.wallet_summary(int(actor.user_id), limit=limit)}), 200


@wallets_bp.post("/topups")
def create_topup():
    actor = current_actor()
    if not actor:
        return jsonify({"message": "Unauthorized"}), 401
    data = request.get_json(silent=True) or {}

    try:
        provider = build_payments_provider()
    except IntegrationDisabledError:
        return jsonify({"ok": False, "error": "INTEGRATION_DISABLED", "message": "top-ups are disabled", "status": 503, "trace_id": get_request_id()}), 503
    except IntegrationMisconfiguredError as exc:
        current_app.logger.error("payments_misconfigured detail=%s", exc)
        return jsonify({"ok": False, "error": "INTEGRATION_MISCONFIGURED", "message": str(exc), "status": 503, "trace_id": get_request_id()}), 503

    reference = f"top_{secrets.token_hex(10)}"
    outcome = run_outcome(
        lambda: escrow_wallet.fund(int(actor.user_id), data.get("amount"), data.get("currency"), reference).to_dict(),
        name="fund_wallet",
        status=201,
    )
    if not outcome.ok:
        body = outcome.to_dict()
        body["trace_id"] = get_request_id()
        return jsonify(body), int(outcome.status)

    user = db.session.get(User, int(actor.user_id))
    try:
        init = provider.initialize(
            amount_minor=int(outcome.data["amount"]),
            currency=str(outcome.data["currency"]),
            email=(user.email if user is not None else "") or "",
            reference=reference,
            metadata={"user_id": int(actor.user_id), "purpose": "topup"},
        )
    except Exception as exc:
        current_app.logger.exception("topup_initialize_failed ref=%s", reference)
        txn_id = int(outcome.data["id"])
        run_atomic(
            lambda: escrow_wallet.cancel_pending_topup(db.session.get(WalletTransaction, txn_id)),
            name="cancel_topup",
        )
        err = ExternalServiceError("payment provider unavailable", detail=type(exc).__name__)
        return jsonify(_error_body(err)), err.status

    return jsonify(
        {
            "ok": True,
            "topup": outcome.data,
            "reference": reference,
            "authorization_url": init.authorization_url,
            "provider": init.provider,
        }
    ), 201


@wallets_bp.post("/transfers")
def create_transfer():
    actor = current_actor()
    if not actor:
        return jsonify({"message": "Unauthorized"}), 401
    data = request.get_json(silent=True) or {}
    idem = lookup_response(int(actor.user_id), "/api/wallet/transfers", data)
    if idem and idem[0] in ("hit", "conflict"):
        return jsonify(idem[1]), idem[2]
    idem_row = idem[1] if idem and idem[0] == "miss" else None

    try:
        recipient_id = int(data.get("recipientId", data.get("recipient_id")))
    except (TypeError, ValueError):
        recipient_id = 0
    outcome = run_outcome(
        lambda: escrow_wallet.transfer(
            int(actor.user_id),
            recipient_id,
            data.get("amount"),
            data.get("currency"),
            purpose=str(data.get("purpose") or "transfer"),
            note=str(data.get("note") or ""),
        ),
        name="wallet_transfer",
        status=201,
    )
    body = outcome.to_dict()
    if not outcome.ok:
        body["trace_id"] = get_request_id()
    if idem_row is not None:
        store_response(idem_row, body, outcome.status)
    return jsonify(body), int(outcome.status)


@wallets_bp.post("/withdrawals")
def create_withdrawal():
    actor = current_actor()
    if not actor:
        return jsonify({"message": "Unauthorized"}), 401
    data = request.get_json(silent=True) or {}
    outcome = run_outcome(
        lambda: escrow_wallet.withdraw(
            int(actor.user_id),
            data.get("amount"),
            data.get("currency"),
            destination=str(data.get("destination") or ""),
        ),
        name="wallet_withdraw",
        status=201,
    )
    body = outcome.to_dict()
    if not outcome.ok:
        body["trace_id"] = get_request_id()
    return jsonify(body), int(outcome.status)

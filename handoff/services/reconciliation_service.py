from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import func

from handoff.extensions import db
from handoff.models import ReconciliationReport, Wallet, WalletTransaction


def _completed_sum(column, wallet_id: int) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(WalletTransaction.amount_minor), 0))
        .filter(column == int(wallet_id), WalletTransaction.status == "completed")
        .scalar()
    )
    return int(total or 0)


def recompute_wallet_balances(*, currency: str | None = None) -> dict:
    """Compare each stored balance with completed credits minus completed debits."""
    q = Wallet.query
    if currency:
        q = q.filter_by(currency=currency.strip().upper())
    wallets = q.order_by(Wallet.id.asc()).all()
    drift_items = []

    for wallet in wallets:
        credits = _completed_sum(WalletTransaction.destination_wallet_id, int(wallet.id))
        debits = _completed_sum(WalletTransaction.source_wallet_id, int(wallet.id))
        computed = credits - debits
        stored = int(wallet.balance_minor or 0)
        if computed != stored or stored < 0:
            drift_items.append(
                {
                    "wallet_id": int(wallet.id),
                    "owner": wallet.owner_key,
                    "currency": wallet.currency,
                    "stored_balance": stored,
                    "computed_balance": computed,
                    "drift": stored - computed,
                }
            )

    return {
        "ok": not drift_items,
        "scope": "wallet_ledger",
        "currency": currency.strip().upper() if currency else None,
        "wallet_count": len(wallets),
        "drift_count": len(drift_items),
        "drift_items": drift_items,
        "generated_at": datetime.utcnow().isoformat(),
    }


def persist_report(summary: dict, *, created_by: int | None = None) -> ReconciliationReport:
    report = ReconciliationReport(
        scope=(summary.get("scope") or "wallet_ledger")[:64],
        currency=summary.get("currency"),
        summary_json=json.dumps(summary)[:200000],
        wallet_count=int(summary.get("wallet_count") or 0),
        drift_count=int(summary.get("drift_count") or 0),
        created_by=int(created_by) if created_by is not None else None,
        created_at=datetime.utcnow(),
    )
    db.session.add(report)
    db.session.commit()
    return report


def latest_report(scope: str = "wallet_ledger") -> dict | None:
    row = (
        ReconciliationReport.query.filter_by(scope=scope)
        .order_by(ReconciliationReport.created_at.desc(), ReconciliationReport.id.desc())
        .first()
    )
    if row is None:
        return None
    payload = row.to_dict()
    try:
        payload["summary"] = json.loads(row.summary_json or "{}")
    except ValueError:
        payload["summary"] = {}
    return payload

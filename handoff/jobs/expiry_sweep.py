from __future__ import annotations

from datetime import datetime

from handoff.config import expiry_sweep_limit
from handoff.services.order_ledger import expire_stale


def run_expiry_sweep(*, limit: int | None = None, now: datetime | None = None) -> dict:
    """Run one pass of the order/top-up expiry sweep.

    Used by the beat-scheduled Celery task, the ``expire-stale`` CLI command
    and the admin endpoint.
    """
    cap = max(1, min(int(limit or expiry_sweep_limit()), 5000))
    outcome = expire_stale(now=now, limit=cap)
    result = dict(outcome.data)
    result["ok"] = bool(outcome.ok) and int(result.get("failed") or 0) == 0
    result["limit"] = cap
    result["ts"] = (now or datetime.utcnow()).isoformat()
    return result

from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from handoff.extensions import db

RETRY_BASE_SECONDS = 5
RETRY_CAP_SECONDS = 900


def _task_log(task_name: str, status: str, started_at: float, trace_id: str = "", **fields) -> None:
    line = {
        "task_name": task_name,
        "status": status,
        "duration_ms": int(max(0.0, time.perf_counter() - started_at) * 1000),
        "trace_id": trace_id or "",
        "timestamp": datetime.utcnow().isoformat(),
        **fields,
    }
    current_app.logger.info(json.dumps(line, default=str))


def retry_countdown(retries: int) -> int:
    return min(RETRY_CAP_SECONDS, RETRY_BASE_SECONDS * 2 ** max(0, int(retries)))


def _retry_or_give_up(task, task_name: str, started: float, trace_id: str, detail: str, **fields) -> None:
    """Schedule another attempt with capped backoff, or log the final failure and return."""
    retries = int(task.request.retries or 0)
    if retries >= int(task.max_retries or 0):
        _task_log(task_name, "failed", started, trace_id, detail=detail, **fields)
        return
    countdown = retry_countdown(retries)
    _task_log(task_name, "retrying", started, trace_id, detail=detail, countdown=countdown, **fields)
    raise task.retry(exc=RuntimeError(detail), countdown=countdown)


@shared_task(bind=True, name="handoff.tasks.settlement_tasks.run_expiry_sweep", max_retries=3)
def run_expiry_sweep_task(self, *, limit: int | None = None, trace_id: str = ""):
    from handoff.jobs.expiry_sweep import run_expiry_sweep

    started = time.perf_counter()
    try:
        result = run_expiry_sweep(limit=limit)
    except Exception as exc:
        db.session.rollback()
        _retry_or_give_up(self, "run_expiry_sweep", started, trace_id, repr(exc))
        raise
    _task_log(
        "run_expiry_sweep",
        "ok" if result.get("ok") else "partial",
        started,
        trace_id,
        expired=result.get("expired"),
        topups_cancelled=result.get("topups_cancelled"),
    )
    return result


@shared_task(bind=True, name="handoff.tasks.settlement_tasks.process_payment_webhook", max_retries=5)
def process_payment_webhook_task(self, *, event_row_id: int, trace_id: str = ""):
    """Apply a recorded provider event. Safe to run more than once per event."""
    from handoff.services.webhook_reconciler import process

    started = time.perf_counter()
    body, _status = process(int(event_row_id))
    if body.get("ok"):
        _task_log("process_payment_webhook", "ok", started, trace_id, event_row_id=event_row_id, outcome=body.get("outcome"))
        return body
    _retry_or_give_up(
        self,
        "process_payment_webhook",
        started,
        trace_id,
        str(body.get("error") or "webhook_processing_failed"),
        event_row_id=event_row_id,
    )
    return body


@shared_task(bind=True, name="handoff.tasks.settlement_tasks.dispatch_notification", max_retries=5)
def dispatch_notification_task(self, *, notification_id: int, trace_id: str = ""):
    from handoff.models import Notification
    from handoff.services.notifier import dispatch

    started = time.perf_counter()
    row = db.session.get(Notification, int(notification_id))
    if row is None:
        _task_log("dispatch_notification", "missing", started, trace_id, notification_id=notification_id)
        return {"ok": False, "detail": "not_found"}
    if dispatch(row):
        _task_log("dispatch_notification", "ok", started, trace_id, notification_id=notification_id)
        return {"ok": True}
    detail = str(row.last_error or "push_send_failed")
    _retry_or_give_up(self, "dispatch_notification", started, trace_id, detail, notification_id=notification_id)
    return {"ok": False, "detail": detail}

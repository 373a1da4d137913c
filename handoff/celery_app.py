from __future__ import annotations

import json
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry

from handoff.config import env_str, expiry_sweep_interval_seconds

TASK_PREFIX = "handoff.tasks.settlement_tasks"

# Webhook and push work must not queue behind a long expiry sweep.
TASK_ROUTES = {
    f"{TASK_PREFIX}.run_expiry_sweep": {"queue": "settlement"},
    f"{TASK_PREFIX}.process_payment_webhook": {"queue": "webhooks"},
    f"{TASK_PREFIX}.dispatch_notification": {"queue": "notifications"},
}

_observers_bound = False


def broker_settings() -> tuple[str, str]:
    redis_url = env_str("REDIS_URL")
    broker = env_str("CELERY_BROKER_URL") or redis_url or "redis://localhost:6379/0"
    backend = env_str("CELERY_RESULT_BACKEND") or redis_url or broker
    return broker, backend


def beat_schedule() -> dict:
    return {
        "expiry-sweep-runner": {
            "task": f"{TASK_PREFIX}.run_expiry_sweep",
            "schedule": float(expiry_sweep_interval_seconds()),
        },
    }


def _trace_id(kwargs) -> str:
    if not isinstance(kwargs, dict):
        return ""
    return str(kwargs.get("trace_id") or "").strip()


def _log_task_event(flask_app, level: str, event: str, **fields) -> None:
    payload = {"event": event, **fields, "timestamp": datetime.utcnow().isoformat()}
    getattr(flask_app.logger, level)(json.dumps(payload, default=str))


def _bind_task_observers(flask_app) -> None:
    global _observers_bound
    if _observers_bound:
        return

    @task_failure.connect(weak=False)
    def _on_failure(sender=None, task_id=None, exception=None, kwargs=None, einfo=None, **_extra):
        _log_task_event(
            flask_app,
            "error",
            "settlement_task_failed",
            task_name=getattr(sender, "name", ""),
            task_id=str(task_id or ""),
            trace_id=_trace_id(kwargs),
            exception=repr(exception),
            einfo=str(einfo) if einfo is not None else None,
        )

    @task_retry.connect(weak=False)
    def _on_retry(request=None, reason=None, **_extra):
        _log_task_event(
            flask_app,
            "warning",
            "settlement_task_retry",
            task_name=str(getattr(request, "task", "") or ""),
            task_id=str(getattr(request, "id", "") or ""),
            trace_id=_trace_id(getattr(request, "kwargs", None)),
            reason=str(reason or ""),
            retries=int(getattr(request, "retries", 0) or 0),
        )

    _observers_bound = True


def create_celery_app(flask_app) -> Celery:
    broker, backend = broker_settings()
    celery = Celery(flask_app.import_name, broker=broker, backend=backend)
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        timezone="UTC",
        enable_utc=True,
        task_default_queue="settlement",
        task_routes=TASK_ROUTES,
        beat_schedule=beat_schedule(),
    )

    class FlaskContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = FlaskContextTask
    celery.set_default()
    celery.autodiscover_tasks(["handoff.tasks"], related_name="settlement_tasks")
    _bind_task_observers(flask_app)
    return celery

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> int:
    """Smoke-check the worker entrypoint and its task routing before a deploy."""
    try:
        from celery_app import celery
        import handoff.tasks.settlement_tasks  # noqa: F401
    except Exception as exc:
        print(f"error: celery_app:celery import failed: {exc}", file=sys.stderr)
        return 1

    problems = []
    if "expiry-sweep-runner" not in (celery.conf.beat_schedule or {}):
        problems.append("beat schedule lacks expiry-sweep-runner")
    registered = set(celery.tasks.keys())
    for task_name in (celery.conf.task_routes or {}):
        if task_name not in registered:
            problems.append(f"routed task not registered: {task_name}")

    for problem in problems:
        print(f"error: {problem}", file=sys.stderr)
    if problems:
        return 1
    print(f"ok: celery_app:celery broker={celery.conf.broker_url} tasks={len(registered)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

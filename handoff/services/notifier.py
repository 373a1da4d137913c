from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from handoff.config import notifications_async
from handoff.extensions import db
from handoff.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from handoff.integrations.push.factory import build_push_provider
from handoff.models import Notification

logger = logging.getLogger(__name__)


def notify(user_id: int, title: str, message: str, kind: str, data: dict | None = None) -> Notification | None:
    """Queue a notification for ``user_id``.

    Best effort: runs after the business transaction has committed and never
    raises. Returns None when the row could not be stored.
    """
    try:
        row = Notification(
            user_id=int(user_id),
            kind=(kind or "general")[:32],
            channel="push",
            title=(title or "")[:160],
            message=message or "",
            data_json=json.dumps(data or {}, sort_keys=True),
            status="queued",
        )
        db.session.add(row)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("notification_queue_failed user_id=%s kind=%s", user_id, kind)
        return None

    if notifications_async():
        try:
            from handoff.tasks.settlement_tasks import dispatch_notification_task

            dispatch_notification_task.delay(notification_id=int(row.id))
        except Exception:
            logger.exception("notification_enqueue_failed notification_id=%s", row.id)
    else:
        try:
            dispatch(row)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("notification_dispatch_failed notification_id=%s", row.id)
    return row


def notify_many(user_ids, title: str, message: str, kind: str, data: dict | None = None) -> int:
    sent = 0
    for uid in sorted({int(u) for u in user_ids if u is not None}):
        if notify(uid, title, message, kind, data) is not None:
            sent += 1
    return sent


def dispatch(row: Notification, *, provider=None) -> bool:
    """Hand a queued notification to the push gateway and record the result."""
    if row.status == "sent":
        return True
    try:
        provider = provider or build_push_provider()
    except IntegrationDisabledError:
        logger.info("notification_push_disabled notification_id=%s", row.id)
        return False
    except IntegrationMisconfiguredError as exc:
        row.status = "failed"
        row.last_error = str(exc)[:240]
        db.session.commit()
        logger.warning("notification_push_misconfigured notification_id=%s error=%s", row.id, exc)
        return False

    result = provider.send(
        user_id=int(row.user_id),
        title=row.title or "",
        message=row.message or "",
        kind=row.kind,
        data=row.data_dict(),
        reference=f"ntf-{int(row.id)}",
    )
    row.attempts = int(row.attempts or 0) + 1
    row.provider = provider.name
    if result.ok:
        row.status = "sent"
        row.provider_ref = (result.provider_ref or "")[:120] or None
        row.sent_at = datetime.utcnow()
        row.last_error = None
    else:
        row.status = "failed"
        row.last_error = f"{result.code}:{result.message}"[:240]
        logger.warning("notification_send_failed notification_id=%s code=%s", row.id, result.code)
    db.session.commit()
    return bool(result.ok)


def list_for_user(user_id: int, *, limit: int = 50, unread_only: bool = False) -> list[Notification]:
    q = Notification.query.filter_by(user_id=int(user_id))
    if unread_only:
        q = q.filter_by(is_read=False)
    return q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(int(limit)).all()

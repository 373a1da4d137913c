from __future__ import annotations

from flask import Blueprint, jsonify, request

from handoff.extensions import db
from handoff.models import Notification
from handoff.services import notifier
from handoff.utils.actors import current_actor

notifications_bp = Blueprint("notifications_bp", __name__, url_prefix="/api")


@notifications_bp.get("/notifications")
def list_notifications():
    actor = current_actor()
    if not actor:
        return jsonify({"message": "Unauthorized"}), 401
    unread_only = (request.args.get("unread") or "").strip().lower() in ("1", "true", "yes")
    rows = notifier.list_for_user(int(actor.user_id), limit=80, unread_only=unread_only)
    return jsonify({"ok": True, "items": [x.to_dict() for x in rows]}), 200


@notifications_bp.post("/notifications/<int:notification_id>/read")
def mark_notification_read(notification_id: int):
    actor = current_actor()
    if not actor:
        return jsonify({"message": "Unauthorized"}), 401
    row = db.session.get(Notification, int(notification_id))
    if row is None or int(row.user_id) != int(actor.user_id):
        return jsonify({"ok": False, "error": "NOT_FOUND", "message": "Notification not found", "status": 404}), 404
    if not row.is_read:
        row.mark_read()
        db.session.commit()
    return jsonify({"ok": True, "item": row.to_dict()}), 200

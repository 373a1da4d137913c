from __future__ import annotations

from dataclasses import dataclass

from flask import g, request

from handoff.extensions import db
from handoff.models import COURIER_ROLES, Role, User
from handoff.utils.jwt_utils import bearer_subject


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as seen by the services: an id and a closed role."""

    user_id: int | None
    role: Role | None
    kind: str = "user"

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id=None, role=None, kind="system")

    @classmethod
    def for_user(cls, user: User) -> "Actor":
        return cls(user_id=int(user.id), role=user.role_enum)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_system(self) -> bool:
        return self.kind == "system"

    @property
    def is_courier(self) -> bool:
        return self.role in COURIER_ROLES

    def audit(self) -> dict:
        return {"type": self.kind if self.kind == "system" else (self.role.value if self.role else "user"), "id": self.user_id}


def user_id_from_request() -> int | None:
    return bearer_subject(request.headers.get("Authorization", ""))


def current_actor() -> Actor | None:
    cached = getattr(g, "actor", None)
    if cached is not None:
        return cached
    uid = user_id_from_request()
    if uid is None:
        return None
    user = db.session.get(User, uid)
    if user is None:
        return None
    actor = Actor.for_user(user)
    g.actor = actor
    return actor

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PushResult:
    ok: bool
    code: str = ""
    message: str = ""
    provider_ref: str = ""
    raw: dict | None = None


class PushProvider:
    name = "unknown"

    def send(self, *, user_id: int, title: str, message: str, kind: str, data: dict | None = None, reference: str = "") -> PushResult:
        raise NotImplementedError

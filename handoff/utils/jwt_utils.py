import logging
import os
import time
from typing import Any, Dict, Optional

import jwt

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ISSUER = "handoff"
ACCESS_TTL_SECONDS = 60 * 60 * 24


def _secret() -> str:
    return os.getenv("SECRET_KEY") or "dev-secret-change-me"


def create_token(user_id: int, ttl_seconds: int = ACCESS_TTL_SECONDS) -> str:
    issued = int(time.time())
    claims = {"sub": str(int(user_id)), "iss": ISSUER, "iat": issued, "exp": issued + int(ttl_seconds)}
    return jwt.encode(claims, _secret(), algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, _secret(), algorithms=[ALGORITHM], issuer=ISSUER, options={"require": ["sub", "exp"]})
    except jwt.ExpiredSignatureError:
        logger.info("bearer_token_expired")
    except jwt.InvalidTokenError as exc:
        logger.debug("bearer_token_invalid reason=%s", exc)
    return None


def get_bearer_token(auth_header: str) -> Optional[str]:
    scheme, _, token = (auth_header or "").strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def bearer_subject(auth_header: str) -> Optional[int]:
    """User id carried by an ``Authorization: Bearer`` header, or None."""
    token = get_bearer_token(auth_header)
    claims = decode_token(token) if token else None
    if not claims:
        return None
    try:
        return int(claims["sub"])
    except (TypeError, ValueError):
        return None

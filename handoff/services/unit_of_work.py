from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from handoff.config import wallet_cas_backoff_ms, wallet_cas_max_attempts
from handoff.errors import ConflictError, HandoffError, Outcome
from handoff.extensions import db

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _backoff_seconds(attempt: int) -> float:
    base_ms = wallet_cas_backoff_ms()
    if base_ms <= 0:
        return 0.0
    delay_ms = base_ms * (2 ** max(0, attempt - 1))
    return (delay_ms + random.uniform(0, base_ms)) / 1000.0


def run_atomic(operation: Callable[[], T], *, name: str = "operation", attempts: int | None = None) -> T:
    """Run ``operation`` and commit, as one transaction.

    A wallet or order version conflict, or a unique-key race with a concurrent writer,
    rolls everything back and re-runs the operation from scratch with
    exponential backoff. Any other exception rolls back and propagates.
    """
    max_attempts = int(attempts or wallet_cas_max_attempts())
    for attempt in range(1, max_attempts + 1):
        try:
            result = operation()
            db.session.commit()
            return result
        except (StaleDataError, IntegrityError) as exc:
            db.session.rollback()
            logger.warning(
                "write_conflict op=%s kind=%s attempt=%s/%s",
                name,
                type(exc).__name__,
                attempt,
                max_attempts,
            )
            if attempt < max_attempts:
                time.sleep(_backoff_seconds(attempt))
        except Exception:
            db.session.rollback()
            raise
    raise ConflictError("update conflicted with concurrent writers; retry later", operation=name)


def run_outcome(operation: Callable[[], dict], *, name: str, status: int = 200) -> Outcome:
    try:
        data = run_atomic(operation, name=name)
    except HandoffError as err:
        logger.info("operation_rejected op=%s code=%s message=%s", name, err.code, err.message)
        return Outcome.failure(err)
    return Outcome.success(data, status=status)

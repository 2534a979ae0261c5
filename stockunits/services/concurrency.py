from __future__ import annotations

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..core.config import settings

T = TypeVar("T")

logger = logging.getLogger("stockunits.concurrency")

# Unique-constraint races on allocation, lock/deadlock errors, optimistic-lock conflicts.
CONFLICT_ERRORS: Tuple[Type[Exception], ...] = (IntegrityError, OperationalError, StaleDataError)


def run_with_retry(
    db: Session,
    func: Callable[[], T],
    *,
    attempts: int = 3,
    backoff_base: float | None = None,
    retry_on: Tuple[Type[Exception], ...] = CONFLICT_ERRORS,
    operation: str = "db.operation",
) -> T:
    """
    Execute ``func`` and re-run it from the start on a concurrency conflict.

    The session is rolled back before every retry so ``func`` always starts
    from a clean transaction. The last error propagates once attempts run out.
    """
    backoff = settings.RETRY_BACKOFF if backoff_base is None else backoff_base
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as exc:
            db.rollback()
            if attempt >= attempts:
                logger.error(
                    "retry.exhausted",
                    extra={"extra_data": {"operation": operation, "attempts": attempts, "error": type(exc).__name__}},
                )
                raise
            logger.warning(
                "retry.conflict",
                extra={"extra_data": {"operation": operation, "attempt": attempt, "error": type(exc).__name__}},
            )
            if backoff:
                time.sleep(backoff * (2 ** (attempt - 1)))
    raise RuntimeError("run_with_retry requires attempts >= 1")

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from services.errors import ConcurrentUpdate


LOGGER = logging.getLogger("campus_resources.concurrency")

T = TypeVar("T")


def commit_with_retry(
    db: Session,
    operation: Callable[[], T],
    *,
    attempts: int = 3,
    retry_on: tuple[type[Exception], ...] = (StaleDataError,),
    label: str = "write",
) -> T:
    """Run ``operation`` and commit; re-run it against fresh state when a
    concurrent writer got there first.

    Rollback expires every loaded instance, so the next attempt re-reads the
    rows it depends on and re-validates its preconditions.
    """
    attempts = max(int(attempts or 1), 1)
    for attempt in range(1, attempts + 1):
        try:
            result = operation()
            db.commit()
            return result
        except retry_on as exc:
            db.rollback()
            LOGGER.warning("Concurrent update label=%s attempt=%s/%s error=%s", label, attempt, attempts, type(exc).__name__)
        except Exception:
            db.rollback()
            raise
    raise ConcurrentUpdate(f"Could not complete {label} after {attempts} attempts; please retry.")

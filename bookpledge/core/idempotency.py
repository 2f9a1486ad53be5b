"""
bookpledge/core/idempotency.py
Processed-event registry for external deliveries (billing notifications).
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookpledge.core.database import get_db_session, idempotency_keys


def check_and_set(key: str, operation: str = "generic") -> bool:
    """
    Check if idempotency key exists, and set it if not (atomic).

    Args:
        key: Idempotency key string
        operation: Operation type (stored as scope for debugging/monitoring)

    Returns:
        True if key was already seen (duplicate request)
        False if key is new (first time seeing it)
    """
    try:
        with get_db_session() as session:
            record_key(session, key, operation)
        return False
    except IntegrityError:
        # UNIQUE constraint violation: another delivery already recorded it
        return True


def record_key(session: Session, key: str, operation: str = "generic", now: Optional[datetime] = None) -> None:
    """Insert the key inside the caller's transaction.

    Raises IntegrityError on commit/flush when the key already exists, which
    rolls the caller's whole unit of work back with it.
    """
    session.execute(
        insert(idempotency_keys).values(
            key=key,
            scope=operation,
            created_at=now or datetime.now(timezone.utc),
        )
    )


def check_key(key: str, session: Optional[Session] = None) -> bool:
    """
    Check if idempotency key exists (read-only).

    Returns:
        True if key exists, False otherwise
    """
    stmt = select(idempotency_keys.c.key).where(idempotency_keys.c.key == key)
    if session is not None:
        return session.execute(stmt).first() is not None
    with get_db_session() as own:
        return own.execute(stmt).first() is not None


"""
User records: payment method references and subscription state.

Subscription writes go through ``apply_subscription_state``, which carries the
monotonic guard on ``subscription_event_at``.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import insert, or_, select
from sqlalchemy.orm import Session

from bookpledge.core.concurrency import UpdateOutcome, conditional_update
from bookpledge.core.database import get_db_session, users
from bookpledge.core.timeutil import ensure_utc, utc_now
from bookpledge.models.subscription import SubscriptionState


def create_user(
    user_id: str,
    email: Optional[str] = None,
    stripe_customer_id: Optional[str] = None,
    stripe_payment_method_id: Optional[str] = None,
    apple_original_transaction_id: Optional[str] = None,
    subscription_status: str = "inactive",
    now: Optional[datetime] = None,
) -> None:
    with get_db_session() as session:
        session.execute(
            insert(users).values(
                user_id=user_id,
                email=email,
                stripe_customer_id=stripe_customer_id,
                stripe_payment_method_id=stripe_payment_method_id,
                apple_original_transaction_id=apple_original_transaction_id,
                subscription_status=subscription_status,
                created_at=now or utc_now(),
            )
        )


def get_payment_refs(user_id: str) -> Tuple[Optional[str], Optional[str]]:
    """(stripe_customer_id, stripe_payment_method_id); (None, None) for unknown users."""
    with get_db_session() as session:
        row = session.execute(
            select(users.c.stripe_customer_id, users.c.stripe_payment_method_id)
            .where(users.c.user_id == user_id)
        ).first()
    if row is None:
        return None, None
    return row.stripe_customer_id, row.stripe_payment_method_id


def find_user_by_original_transaction(original_transaction_id: str, session: Optional[Session] = None) -> Optional[str]:
    stmt = select(users.c.user_id).where(users.c.apple_original_transaction_id == original_transaction_id)
    if session is not None:
        row = session.execute(stmt).first()
    else:
        with get_db_session() as own:
            row = own.execute(stmt).first()
    return row.user_id if row else None


def get_subscription_state(user_id: str) -> Optional[SubscriptionState]:
    with get_db_session() as session:
        row = session.execute(
            select(
                users.c.user_id,
                users.c.subscription_status,
                users.c.subscription_expires_at,
                users.c.subscription_event_at,
            ).where(users.c.user_id == user_id)
        ).first()
    if row is None:
        return None
    return SubscriptionState(
        user_id=row.user_id,
        status=row.subscription_status,
        expires_at=ensure_utc(row.subscription_expires_at),
        event_at=ensure_utc(row.subscription_event_at),
    )


def apply_subscription_state(
    session: Session,
    user_id: str,
    event_at: datetime,
    status: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    set_expires: bool = False,
) -> UpdateOutcome:
    """Write subscription fields unless a newer notification was already applied.

    CONFLICT means the stored ``subscription_event_at`` is later than ``event_at``.
    """
    values = {"subscription_event_at": event_at}
    if status is not None:
        values["subscription_status"] = status
    if set_expires:
        values["subscription_expires_at"] = expires_at
    return conditional_update(
        session,
        users,
        [
            users.c.user_id == user_id,
            or_(users.c.subscription_event_at.is_(None), users.c.subscription_event_at <= event_at),
        ],
        values,
    )

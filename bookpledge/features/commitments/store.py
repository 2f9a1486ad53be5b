"""
Commitment Store: persisted commitment records, source of truth for lifecycle state.

Reads return plain ``Commitment`` dataclasses. Every write is a conditional
UPDATE so concurrent reapers and lifeline requests cannot clobber each other.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import insert, select

from bookpledge.core.concurrency import UpdateOutcome, conditional_update
from bookpledge.core.database import commitments, get_db_session, penalty_charges
from bookpledge.core.timeutil import utc_now
from bookpledge.features.commitments.lifecycle import (
    ACTIVE_STATUSES,
    CommitmentStatus,
    TransitionResult,
    transition,
)
from bookpledge.models.commitment import Commitment


def _active() -> List[str]:
    return sorted(ACTIVE_STATUSES)


def create_commitment(
    user_id: str,
    book_id: str,
    deadline: datetime,
    pledge_amount,
    currency: str = "USD",
    status: str = CommitmentStatus.PENDING.value,
    commitment_id: Optional[str] = None,
    is_freeze_used: bool = False,
    now: Optional[datetime] = None,
) -> Commitment:
    """Insert a commitment (used by seeding and tests; creation UI is out of scope)."""
    ts = now or utc_now()
    cid = commitment_id or str(uuid4())
    with get_db_session() as session:
        session.execute(
            insert(commitments).values(
                id=cid,
                user_id=user_id,
                book_id=book_id,
                status=status,
                deadline=deadline,
                pledge_amount=Decimal(str(pledge_amount)),
                currency=currency.upper(),
                is_freeze_used=is_freeze_used,
                created_at=ts,
                updated_at=ts,
            )
        )
    return get_commitment(cid)


def get_commitment(commitment_id: str) -> Optional[Commitment]:
    with get_db_session() as session:
        row = session.execute(
            select(commitments).where(commitments.c.id == commitment_id)
        ).first()
    return Commitment.from_row(row._mapping) if row else None


def select_overdue(now: Optional[datetime] = None, limit: int = 100) -> List[Commitment]:
    """Active commitments whose deadline has passed, oldest deadline first."""
    ts = now or utc_now()
    with get_db_session() as session:
        rows = session.execute(
            select(commitments)
            .where(commitments.c.status.in_(_active()))
            .where(commitments.c.deadline < ts)
            .order_by(commitments.c.deadline.asc())
            .limit(limit)
        ).all()
    return [Commitment.from_row(r._mapping) for r in rows]


def select_defaulted_without_charge(limit: int = 50) -> List[Commitment]:
    """Defaulted commitments with no penalty row (crash between default and charge)."""
    with get_db_session() as session:
        rows = session.execute(
            select(commitments)
            .outerjoin(penalty_charges, penalty_charges.c.commitment_id == commitments.c.id)
            .where(commitments.c.status == CommitmentStatus.DEFAULTED.value)
            .where(penalty_charges.c.id.is_(None))
            .order_by(commitments.c.defaulted_at.asc())
            .limit(limit)
        ).all()
    return [Commitment.from_row(r._mapping) for r in rows]


def mark_defaulted(commitment_id: str, now: Optional[datetime] = None) -> TransitionResult:
    """active -> defaulted through the lifecycle state machine.

    REJECTED when the row is already terminal (another reaper won).
    """
    return transition(commitment_id, CommitmentStatus.DEFAULTED, now)


def freeze_used_for_book(user_id: str, book_id: str, exclude_id: Optional[str] = None) -> bool:
    stmt = (
        select(commitments.c.id)
        .where(commitments.c.user_id == user_id)
        .where(commitments.c.book_id == book_id)
        .where(commitments.c.is_freeze_used.is_(True))
    )
    if exclude_id:
        stmt = stmt.where(commitments.c.id != exclude_id)
    with get_db_session() as session:
        return session.execute(stmt.limit(1)).first() is not None


def freeze_used_since(user_id: str, since: datetime, exclude_id: Optional[str] = None) -> bool:
    stmt = (
        select(commitments.c.id)
        .where(commitments.c.user_id == user_id)
        .where(commitments.c.is_freeze_used.is_(True))
        .where(commitments.c.updated_at >= since)
    )
    if exclude_id:
        stmt = stmt.where(commitments.c.id != exclude_id)
    with get_db_session() as session:
        return session.execute(stmt.limit(1)).first() is not None


def apply_lifeline(commitment_id: str, new_deadline: datetime, now: Optional[datetime] = None) -> UpdateOutcome:
    """Extend the deadline exactly once: guarded by is_freeze_used = false and active status."""
    ts = now or utc_now()
    with get_db_session() as session:
        return conditional_update(
            session,
            commitments,
            [
                commitments.c.id == commitment_id,
                commitments.c.is_freeze_used.is_(False),
                commitments.c.status.in_(_active()),
            ],
            {"deadline": new_deadline, "is_freeze_used": True, "updated_at": ts},
        )

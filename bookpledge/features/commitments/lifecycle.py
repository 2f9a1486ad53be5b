"""
Commitment lifecycle state machine.

    pending ──> in_progress ──> completed
       │             │
       ├─────────────┴──> defaulted
       └─────────────┴──> cancelled

completed, defaulted and cancelled are terminal. A transition request from a
terminal state is a no-op (REJECTED): nothing is written and nothing raises.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from sqlalchemy import select

from bookpledge.core.concurrency import UpdateOutcome, conditional_update
from bookpledge.core.database import commitments, get_db_session
from bookpledge.core.timeutil import utc_now


class CommitmentStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"
    CANCELLED = "cancelled"


ACTIVE_STATUSES: FrozenSet[str] = frozenset({CommitmentStatus.PENDING.value, CommitmentStatus.IN_PROGRESS.value})
TERMINAL_STATUSES: FrozenSet[str] = frozenset({
    CommitmentStatus.COMPLETED.value,
    CommitmentStatus.DEFAULTED.value,
    CommitmentStatus.CANCELLED.value,
})

# target -> allowed sources
_ALLOWED_SOURCES: Dict[str, FrozenSet[str]] = {
    CommitmentStatus.IN_PROGRESS.value: frozenset({CommitmentStatus.PENDING.value}),
    CommitmentStatus.COMPLETED.value: frozenset({CommitmentStatus.IN_PROGRESS.value}),
    CommitmentStatus.DEFAULTED.value: ACTIVE_STATUSES,
    CommitmentStatus.CANCELLED.value: ACTIVE_STATUSES,
}


class TransitionResult(str, Enum):
    UPDATED = "updated"
    CONFLICT = "conflict"
    REJECTED = "rejected"


def _value(status) -> str:
    return status.value if isinstance(status, CommitmentStatus) else str(status)


def is_terminal(status) -> bool:
    return _value(status) in TERMINAL_STATUSES


def allowed_sources(target) -> FrozenSet[str]:
    return _ALLOWED_SOURCES.get(_value(target), frozenset())


def can_transition(current, target) -> bool:
    return _value(current) in allowed_sources(target)


def transition(
    commitment_id: str,
    target,
    now: Optional[datetime] = None,
    current: Optional[str] = None,
) -> TransitionResult:
    """Move a commitment to ``target`` with a single conditional write.

    ``current`` is the status the caller last observed. When it is known and
    cannot reach ``target`` the call is REJECTED without touching the row.
    The write itself is guarded by the full set of allowed sources, so a
    concurrent writer that moved the row first turns this into CONFLICT.
    Without ``current``, a zero-row write re-reads the status: a row already
    in a terminal state reports REJECTED.
    """
    ts = now or utc_now()
    target_value = _value(target)
    sources = allowed_sources(target_value)
    if not sources:
        return TransitionResult.REJECTED
    if current is not None and not can_transition(current, target_value):
        return TransitionResult.REJECTED

    values = {"status": target_value, "updated_at": ts}
    if target_value == CommitmentStatus.DEFAULTED.value:
        values["defaulted_at"] = ts

    with get_db_session() as session:
        outcome = conditional_update(
            session,
            commitments,
            [commitments.c.id == commitment_id, commitments.c.status.in_(sorted(sources))],
            values,
        )
        if outcome is UpdateOutcome.UPDATED:
            return TransitionResult.UPDATED
        if current is None:
            status = session.execute(
                select(commitments.c.status).where(commitments.c.id == commitment_id)
            ).scalar_one_or_none()
            if status is not None and is_terminal(status):
                return TransitionResult.REJECTED
    return TransitionResult.CONFLICT

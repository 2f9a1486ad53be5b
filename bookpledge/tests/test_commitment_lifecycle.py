"""
Lifecycle state machine and conditional-write guardrails.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from bookpledge.core.concurrency import UpdateOutcome, conditional_update
from bookpledge.core.database import commitments, get_db_session
from bookpledge.features.commitments import store
from bookpledge.features.commitments.lifecycle import (
    ACTIVE_STATUSES,
    CommitmentStatus,
    TransitionResult,
    can_transition,
    is_terminal,
    transition,
)


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        ("pending", "in_progress", True),
        ("in_progress", "completed", True),
        ("pending", "defaulted", True),
        ("in_progress", "defaulted", True),
        ("pending", "cancelled", True),
        ("in_progress", "cancelled", True),
        ("pending", "completed", False),
        ("completed", "defaulted", False),
        ("defaulted", "pending", False),
        ("cancelled", "in_progress", False),
        ("defaulted", "defaulted", False),
    ],
)
def test_can_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_terminal_states():
    assert is_terminal(CommitmentStatus.COMPLETED)
    assert is_terminal("defaulted")
    assert is_terminal("cancelled")
    assert not is_terminal("pending")
    assert ACTIVE_STATUSES == {"pending", "in_progress"}


@pytest.mark.parametrize("terminal", ["completed", "defaulted", "cancelled"])
def test_transition_from_terminal_is_a_noop(terminal, make_commitment, now):
    c = make_commitment(status=terminal)

    result = transition(c.id, CommitmentStatus.DEFAULTED, now, current=terminal)

    assert result is TransitionResult.REJECTED
    after = store.get_commitment(c.id)
    assert after.status == terminal
    assert after.updated_at == c.updated_at


@pytest.mark.parametrize("terminal", ["completed", "defaulted", "cancelled"])
def test_transition_without_observed_status_rejects_terminal_row(terminal, make_commitment, now):
    c = make_commitment(status=terminal)

    assert transition(c.id, "defaulted", now + timedelta(hours=1)) is TransitionResult.REJECTED
    assert store.get_commitment(c.id).updated_at == c.updated_at


def test_transition_on_missing_row_is_conflict(now):
    assert transition("no-such-commitment", "defaulted", now) is TransitionResult.CONFLICT


def test_transition_loses_race_reports_conflict(make_commitment, now):
    c = make_commitment(status="pending")

    # Caller observed 'pending', but the row moved on before the write
    assert transition(c.id, "cancelled", now) is TransitionResult.UPDATED
    assert transition(c.id, "defaulted", now, current="pending") is TransitionResult.CONFLICT
    assert store.get_commitment(c.id).status == "cancelled"


def test_transition_to_defaulted_stamps_defaulted_at(make_commitment, now):
    c = make_commitment(status="in_progress")

    assert transition(c.id, "defaulted", now) is TransitionResult.UPDATED

    after = store.get_commitment(c.id)
    assert after.status == "defaulted"
    assert after.defaulted_at == now
    assert after.updated_at == now


def test_conditional_update_zero_rows_is_conflict(make_commitment, now):
    c = make_commitment(status="completed")

    with get_db_session() as session:
        outcome = conditional_update(
            session,
            commitments,
            [commitments.c.id == c.id, commitments.c.status == "pending"],
            {"status": "defaulted"},
        )

    assert outcome is UpdateOutcome.CONFLICT
    assert not outcome.updated
    with get_db_session() as session:
        status = session.execute(select(commitments.c.status).where(commitments.c.id == c.id)).scalar_one()
    assert status == "completed"


def test_conditional_update_requires_a_condition():
    with get_db_session() as session:
        with pytest.raises(ValueError):
            conditional_update(session, commitments, [], {"status": "defaulted"})


def test_select_overdue_only_returns_active_past_deadline(make_commitment, now):
    overdue = make_commitment(status="pending", deadline=now - timedelta(hours=1))
    in_progress = make_commitment(status="in_progress", book_id="book-2", deadline=now - timedelta(days=3))
    make_commitment(status="pending", book_id="book-3", deadline=now + timedelta(hours=1))
    make_commitment(status="completed", book_id="book-4", deadline=now - timedelta(days=2))

    ids = [c.id for c in store.select_overdue(now)]

    # Oldest deadline first
    assert ids == [in_progress.id, overdue.id]


def test_mark_defaulted_is_exactly_once(make_commitment, now):
    c = make_commitment()

    assert store.mark_defaulted(c.id, now) is TransitionResult.UPDATED
    assert store.mark_defaulted(c.id, now + timedelta(minutes=1)) is TransitionResult.REJECTED
    assert store.get_commitment(c.id).defaulted_at == now

"""
Lifeline guardrails: ordering of preconditions, one-time use, cooldown, concurrency.
"""

import threading
from datetime import timedelta

import pytest

from bookpledge.core.errors import (
    AlreadyUsedForBookError,
    ConcurrencyConflictError,
    CooldownActiveError,
    InvalidStateError,
    NotFoundError,
    PermissionError,
)
from bookpledge.core.metrics import lifeline_requests_total
from bookpledge.features.commitments import store
from bookpledge.features.lifeline.service import use_lifeline


def test_lifeline_extends_deadline_by_seven_days(make_commitment, now):
    c = make_commitment(deadline=now + timedelta(days=2))

    result = use_lifeline(c.id, "user-1", now=now)

    assert result.new_deadline == c.deadline + timedelta(days=7)
    after = store.get_commitment(c.id)
    assert after.deadline == c.deadline + timedelta(days=7)
    assert after.is_freeze_used is True
    assert after.updated_at == now
    assert result.commitment.id == c.id
    assert lifeline_requests_total.value({"result": "applied"}) == 1


def test_lifeline_works_for_in_progress(make_commitment, now):
    c = make_commitment(status="in_progress", deadline=now + timedelta(days=1))
    assert use_lifeline(c.id, "user-1", now=now).new_deadline == now + timedelta(days=8)


def test_unknown_commitment_is_not_found(now):
    with pytest.raises(NotFoundError):
        use_lifeline("missing", "user-1", now=now)


def test_other_users_commitment_is_forbidden(make_commitment, now):
    c = make_commitment(user_id="owner")
    with pytest.raises(PermissionError):
        use_lifeline(c.id, "intruder", now=now)
    assert store.get_commitment(c.id).is_freeze_used is False


@pytest.mark.parametrize("status", ["completed", "defaulted", "cancelled"])
def test_terminal_commitment_is_invalid_state(status, make_commitment, now):
    c = make_commitment(status=status)
    with pytest.raises(InvalidStateError):
        use_lifeline(c.id, "user-1", now=now)


def test_same_book_already_used(make_commitment, now):
    # Earlier attempt at the same book used its lifeline long ago (outside cooldown)
    make_commitment(status="defaulted", is_freeze_used=True, now=now - timedelta(days=90))
    c = make_commitment(deadline=now + timedelta(days=3))

    with pytest.raises(AlreadyUsedForBookError):
        use_lifeline(c.id, "user-1", now=now)
    assert store.get_commitment(c.id).deadline == now + timedelta(days=3)


def test_same_book_wins_over_cooldown(make_commitment, now):
    make_commitment(is_freeze_used=True, deadline=now + timedelta(days=5), now=now - timedelta(days=2))
    c = make_commitment(deadline=now + timedelta(days=3))

    with pytest.raises(AlreadyUsedForBookError):
        use_lifeline(c.id, "user-1", now=now)


def test_cooldown_active_for_other_book(make_commitment, now):
    make_commitment(book_id="book-A", is_freeze_used=True, now=now - timedelta(days=10))
    c = make_commitment(book_id="book-B", deadline=now + timedelta(days=3))

    with pytest.raises(CooldownActiveError):
        use_lifeline(c.id, "user-1", now=now)
    assert lifeline_requests_total.value({"result": "cooldown_active"}) == 1


def test_cooldown_elapsed_allows_lifeline(make_commitment, now):
    make_commitment(book_id="book-A", is_freeze_used=True, now=now - timedelta(days=31))
    c = make_commitment(book_id="book-B", deadline=now + timedelta(days=3))

    assert use_lifeline(c.id, "user-1", now=now).new_deadline == now + timedelta(days=10)


def test_cooldown_is_per_user(make_commitment, now):
    make_commitment(user_id="someone-else", book_id="book-A", is_freeze_used=True, now=now - timedelta(days=1))
    c = make_commitment(book_id="book-B", deadline=now + timedelta(days=3))

    use_lifeline(c.id, "user-1", now=now)


def test_second_request_on_same_commitment_is_conflict(make_commitment, now):
    c = make_commitment(deadline=now + timedelta(days=3))
    use_lifeline(c.id, "user-1", now=now)

    with pytest.raises(ConcurrencyConflictError):
        use_lifeline(c.id, "user-1", now=now + timedelta(minutes=1))
    # Extended exactly once
    assert store.get_commitment(c.id).deadline == now + timedelta(days=10)


def test_concurrent_requests_extend_exactly_once(make_commitment, now):
    c = make_commitment(deadline=now + timedelta(days=3))
    n = 8
    barrier = threading.Barrier(n)
    successes, conflicts, others = [], [], []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            result = use_lifeline(c.id, "user-1", now=now)
            with lock:
                successes.append(result)
        except ConcurrencyConflictError:
            with lock:
                conflicts.append(1)
        except Exception as e:
            with lock:
                others.append(e)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert others == []
    assert len(successes) == 1
    assert len(conflicts) == n - 1
    assert store.get_commitment(c.id).deadline == now + timedelta(days=10)

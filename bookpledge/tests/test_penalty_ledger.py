"""
Penalty ledger: at most one charge per commitment, claimed attempts, sticky success.
"""

import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from bookpledge.core.concurrency import UpdateOutcome
from bookpledge.core.database import get_db_session, penalty_charges
from bookpledge.features.penalties import ledger
from bookpledge.features.penalties.gateway import idempotency_key_for, to_minor_units


def _charge_rows():
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(penalty_charges)).scalar_one()


def test_get_or_create_is_idempotent(make_commitment, now):
    c = make_commitment(pledge_amount="25.50", currency="eur")

    first, created = ledger.get_or_create_charge(c, "cus_1", "pm_1", now)
    second, created_again = ledger.get_or_create_charge(c, "cus_other", "pm_other", now)

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert first.amount == Decimal("25.50")
    assert first.currency == "EUR"
    assert first.customer_ref == "cus_1"
    assert first.outcome == "pending"
    assert first.attempt_count == 0
    assert _charge_rows() == 1


def test_concurrent_creates_yield_one_row(make_commitment, now):
    c = make_commitment()
    n = 6
    barrier = threading.Barrier(n)
    ids = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        charge, _ = ledger.get_or_create_charge(c, "cus_1", "pm_1", now)
        with lock:
            ids.append(charge.id)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(ids) == n
    assert len(set(ids)) == 1
    assert _charge_rows() == 1


def test_claim_attempt_only_once_per_attempt_number(make_commitment, now):
    c = make_commitment()
    charge, _ = ledger.get_or_create_charge(c, None, None, now)

    assert ledger.claim_attempt(charge, now) is UpdateOutcome.UPDATED
    # Same stale snapshot (attempt_count=0) from a concurrent reaper
    assert ledger.claim_attempt(charge, now) is UpdateOutcome.CONFLICT

    stored = ledger.get_charge(charge.id)
    assert stored.attempt_count == 1
    assert stored.last_attempt_at == now
    # Leased until the attempt is recorded
    assert stored.next_retry_at == now + timedelta(hours=4)


def test_claimed_charge_is_leased_until_recorded(make_commitment, now):
    c = make_commitment()
    charge, _ = ledger.get_or_create_charge(c, None, None, now)
    ledger.claim_attempt(charge, now, lease=timedelta(hours=1))

    in_flight = ledger.get_charge(charge.id)
    assert ledger.select_retryable(now + timedelta(minutes=30)) == []
    assert ledger.claim_attempt(in_flight, now + timedelta(minutes=30)) is UpdateOutcome.CONFLICT

    # An attempt that never recorded an outcome becomes retryable once the lease runs out
    assert [r.id for r in ledger.select_retryable(now + timedelta(hours=1))] == [charge.id]
    assert ledger.claim_attempt(in_flight, now + timedelta(hours=1)) is UpdateOutcome.UPDATED
    assert ledger.get_charge(charge.id).attempt_count == 2


def test_success_is_sticky(make_commitment, now):
    c = make_commitment()
    charge, _ = ledger.get_or_create_charge(c, None, None, now)
    ledger.claim_attempt(charge, now)

    assert ledger.record_success(charge.id, "pi_123", now) is UpdateOutcome.UPDATED
    assert ledger.record_decline(charge.id, "late decline", "card_declined", now) is UpdateOutcome.CONFLICT
    assert ledger.claim_attempt(ledger.get_charge(charge.id), now) is UpdateOutcome.CONFLICT

    stored = ledger.get_charge_for_commitment(c.id)
    assert stored.outcome == "succeeded"
    assert stored.payment_intent_id == "pi_123"
    assert stored.is_settled


def test_decline_and_exhaustion_recorded(make_commitment, now):
    c = make_commitment()
    charge, _ = ledger.get_or_create_charge(c, None, None, now)
    retry_at = now + timedelta(hours=4)

    ledger.record_decline(charge.id, "Your card was declined.", "card_declined", now, retry_at)
    stored = ledger.get_charge(charge.id)
    assert stored.outcome == "failed"
    assert stored.failure_code == "card_declined"
    assert stored.next_retry_at == retry_at

    ledger.record_exhausted(charge.id, "still declined", now, code="card_declined")
    stored = ledger.get_charge(charge.id)
    assert stored.outcome == "failed"
    assert stored.failure_code == ledger.MAX_ATTEMPTS_EXCEEDED
    assert stored.last_error == "card_declined: still declined"
    assert stored.next_retry_at is None


def test_select_retryable_filters(make_commitment, now):
    due = ledger.get_or_create_charge(make_commitment(book_id="b1"), None, None, now)[0]
    later = ledger.get_or_create_charge(make_commitment(book_id="b2"), None, None, now)[0]
    exhausted = ledger.get_or_create_charge(make_commitment(book_id="b3"), None, None, now)[0]
    paid = ledger.get_or_create_charge(make_commitment(book_id="b4"), None, None, now)[0]

    ledger.record_decline(due.id, "declined", "card_declined", now, now - timedelta(minutes=1))
    ledger.record_transient(later.id, "timeout", now, now + timedelta(hours=4))
    for i in range(3):
        ledger.claim_attempt(ledger.get_charge(exhausted.id), now - timedelta(hours=20 - 5 * i))
    ledger.record_success(paid.id, "pi_1", now)

    ids = {c.id for c in ledger.select_retryable(now, max_attempts=3)}

    assert ids == {due.id}


@pytest.mark.parametrize(
    "amount,currency,expected",
    [
        ("20", "USD", 2000),
        ("19.99", "usd", 1999),
        ("1000", "JPY", 1000),
        ("5000", "krw", 5000),
        ("0.005", "EUR", 1),
    ],
)
def test_to_minor_units(amount, currency, expected):
    assert to_minor_units(amount, currency) == expected


def test_idempotency_key_is_per_attempt():
    assert idempotency_key_for("abc", 1) == "penalty_abc_1"
    assert idempotency_key_for("abc", 1) != idempotency_key_for("abc", 2)

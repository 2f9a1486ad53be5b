"""
Penalty Ledger: one charge row per defaulted commitment.

- creation is idempotent: UNIQUE(commitment_id) plus reselect on IntegrityError
- each gateway attempt is claimed first with a conditional increment of
  attempt_count, so two concurrent reapers never submit the same attempt twice
- a claim is a lease: next_retry_at is pushed out while the gateway call is in
  flight, so a retry pass never picks up a charge another pass is working on
- the outcome never moves away from 'succeeded'
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import insert, or_, select
from sqlalchemy.exc import IntegrityError

from bookpledge.core.concurrency import UpdateOutcome, conditional_update
from bookpledge.core.config import settings
from bookpledge.core.database import get_db_session, penalty_charges
from bookpledge.core.timeutil import utc_now
from bookpledge.models.commitment import Commitment
from bookpledge.models.penalty import PenaltyCharge

OUTCOME_PENDING = "pending"
OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"

MAX_ATTEMPTS_EXCEEDED = "MAX_ATTEMPTS_EXCEEDED"


def get_charge(charge_id: str) -> Optional[PenaltyCharge]:
    with get_db_session() as session:
        row = session.execute(
            select(penalty_charges).where(penalty_charges.c.id == charge_id)
        ).first()
    return PenaltyCharge.from_row(row._mapping) if row else None


def get_charge_for_commitment(commitment_id: str) -> Optional[PenaltyCharge]:
    with get_db_session() as session:
        row = session.execute(
            select(penalty_charges).where(penalty_charges.c.commitment_id == commitment_id)
        ).first()
    return PenaltyCharge.from_row(row._mapping) if row else None


def get_or_create_charge(
    commitment: Commitment,
    customer_ref: Optional[str] = None,
    payment_method_ref: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[PenaltyCharge, bool]:
    """Return (charge, created). An existing row for the commitment always wins."""
    existing = get_charge_for_commitment(commitment.id)
    if existing is not None:
        return existing, False

    ts = now or utc_now()
    try:
        with get_db_session() as session:
            session.execute(
                insert(penalty_charges).values(
                    id=str(uuid4()),
                    commitment_id=commitment.id,
                    user_id=commitment.user_id,
                    amount=commitment.pledge_amount,
                    currency=commitment.currency,
                    customer_ref=customer_ref,
                    payment_method_ref=payment_method_ref,
                    outcome=OUTCOME_PENDING,
                    attempt_count=0,
                    created_at=ts,
                    updated_at=ts,
                )
            )
    except IntegrityError:
        # Another reaper inserted first
        existing = get_charge_for_commitment(commitment.id)
        if existing is None:
            raise
        return existing, False

    return get_charge_for_commitment(commitment.id), True


def claim_attempt(
    charge: PenaltyCharge,
    now: Optional[datetime] = None,
    lease: Optional[timedelta] = None,
) -> UpdateOutcome:
    """Reserve attempt number ``charge.attempt_count + 1`` for the caller.

    The claim holds ``next_retry_at`` at ``now + lease`` until one of the
    record_* calls overwrites it. A charge whose lease has not expired cannot
    be claimed again.

    CONFLICT means another invocation already claimed it (or the charge settled).
    """
    ts = now or utc_now()
    lease = lease if lease is not None else timedelta(hours=settings.PENALTY_RETRY_INTERVAL_HOURS)
    with get_db_session() as session:
        return conditional_update(
            session,
            penalty_charges,
            [
                penalty_charges.c.id == charge.id,
                penalty_charges.c.attempt_count == charge.attempt_count,
                penalty_charges.c.outcome != OUTCOME_SUCCEEDED,
                or_(penalty_charges.c.next_retry_at.is_(None), penalty_charges.c.next_retry_at <= ts),
            ],
            {
                "attempt_count": charge.attempt_count + 1,
                "last_attempt_at": ts,
                "next_retry_at": ts + lease,
                "updated_at": ts,
            },
        )


def _settle(charge_id: str, values: dict) -> UpdateOutcome:
    with get_db_session() as session:
        return conditional_update(
            session,
            penalty_charges,
            [penalty_charges.c.id == charge_id, penalty_charges.c.outcome != OUTCOME_SUCCEEDED],
            values,
        )


def record_success(charge_id: str, payment_intent_id: Optional[str], now: Optional[datetime] = None) -> UpdateOutcome:
    ts = now or utc_now()
    return _settle(charge_id, {
        "outcome": OUTCOME_SUCCEEDED,
        "payment_intent_id": payment_intent_id,
        "last_error": None,
        "failure_code": None,
        "next_retry_at": None,
        "updated_at": ts,
    })


def record_decline(
    charge_id: str,
    reason: Optional[str],
    code: Optional[str],
    now: Optional[datetime] = None,
    next_retry_at: Optional[datetime] = None,
    payment_intent_id: Optional[str] = None,
) -> UpdateOutcome:
    ts = now or utc_now()
    values = {
        "outcome": OUTCOME_FAILED,
        "last_error": reason,
        "failure_code": code,
        "next_retry_at": next_retry_at,
        "updated_at": ts,
    }
    if payment_intent_id:
        values["payment_intent_id"] = payment_intent_id
    return _settle(charge_id, values)


def record_transient(
    charge_id: str,
    reason: Optional[str],
    now: Optional[datetime] = None,
    next_retry_at: Optional[datetime] = None,
) -> UpdateOutcome:
    """Outcome stays pending; the claimed attempt still counts."""
    ts = now or utc_now()
    return _settle(charge_id, {
        "outcome": OUTCOME_PENDING,
        "last_error": reason,
        "next_retry_at": next_retry_at,
        "updated_at": ts,
    })


def record_exhausted(
    charge_id: str,
    reason: Optional[str],
    now: Optional[datetime] = None,
    code: Optional[str] = None,
) -> UpdateOutcome:
    """Terminal failure: no further retries are scheduled.

    failure_code becomes MAX_ATTEMPTS_EXCEEDED; the last gateway code is kept
    as a prefix of last_error.
    """
    ts = now or utc_now()
    if code and code != MAX_ATTEMPTS_EXCEEDED and not (reason or "").startswith(f"{code}: "):
        reason = f"{code}: {reason}" if reason else code
    return _settle(charge_id, {
        "outcome": OUTCOME_FAILED,
        "last_error": reason,
        "failure_code": MAX_ATTEMPTS_EXCEEDED,
        "next_retry_at": None,
        "updated_at": ts,
    })


def select_retryable(now: Optional[datetime] = None, max_attempts: int = 3, limit: int = 50) -> List[PenaltyCharge]:
    ts = now or utc_now()
    with get_db_session() as session:
        rows = session.execute(
            select(penalty_charges)
            .where(penalty_charges.c.outcome.in_([OUTCOME_PENDING, OUTCOME_FAILED]))
            .where(penalty_charges.c.attempt_count < max_attempts)
            .where(or_(penalty_charges.c.next_retry_at.is_(None), penalty_charges.c.next_retry_at <= ts))
            .order_by(penalty_charges.c.created_at.asc())
            .limit(limit)
        ).all()
    return [PenaltyCharge.from_row(r._mapping) for r in rows]

"""
Lifeline Manager: a one-time, rate-limited deadline extension.

Preconditions are checked in a fixed order and the first failure wins:
existence/ownership, active status, per-book use, per-user cooldown. The
final write is conditional on ``is_freeze_used = false`` so concurrent
requests for the same commitment produce exactly one extension.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from bookpledge.core.config import settings
from bookpledge.core.errors import (
    AlreadyUsedForBookError,
    ConcurrencyConflictError,
    CooldownActiveError,
    InvalidStateError,
    NotFoundError,
    PermissionError,
)
from bookpledge.core.logging import log_event
from bookpledge.core.metrics import lifeline_requests_total
from bookpledge.core.timeutil import utc_now
from bookpledge.features.commitments import store
from bookpledge.features.commitments.lifecycle import ACTIVE_STATUSES
from bookpledge.models.commitment import Commitment

logger = logging.getLogger("bookpledge")


@dataclass
class LifelineResult:
    new_deadline: datetime
    commitment: Commitment


def extension() -> timedelta:
    return timedelta(days=settings.LIFELINE_EXTENSION_DAYS)


def cooldown() -> timedelta:
    return timedelta(days=settings.LIFELINE_COOLDOWN_DAYS)


def _reject(result: str, exc: Exception, user_id: str, commitment_id: str):
    lifeline_requests_total.inc(labels={"result": result})
    log_event(
        "info",
        "lifeline.rejected",
        user_id=user_id,
        commitment_id=commitment_id,
        error_code=getattr(exc, "code", None),
    )
    raise exc


def use_lifeline(commitment_id: str, user_id: str, now: Optional[datetime] = None) -> LifelineResult:
    """Extend the commitment's deadline once.

    Raises:
        NotFoundError: unknown commitment
        PermissionError: caller does not own it
        InvalidStateError: not pending / in_progress
        AlreadyUsedForBookError: another commitment for this book used its lifeline
        CooldownActiveError: the user used a lifeline within the cooldown window
        ConcurrencyConflictError: the conditional write matched nothing
    """
    ts = now or utc_now()

    commitment = store.get_commitment(commitment_id)
    if commitment is None:
        _reject("not_found", NotFoundError("Commitment not found"), user_id, commitment_id)
    if commitment.user_id != user_id:
        _reject("forbidden", PermissionError("Forbidden"), user_id, commitment_id)
    if commitment.status not in ACTIVE_STATUSES:
        _reject(
            "invalid_state",
            InvalidStateError("Lifeline can only be used on pending or in-progress commitments"),
            user_id,
            commitment_id,
        )
    if store.freeze_used_for_book(user_id, commitment.book_id, exclude_id=commitment.id):
        _reject(
            "already_used_for_book",
            AlreadyUsedForBookError("Lifeline already used for this book"),
            user_id,
            commitment_id,
        )
    if store.freeze_used_since(user_id, ts - cooldown(), exclude_id=commitment.id):
        _reject(
            "cooldown_active",
            CooldownActiveError(f"Lifeline can be used once every {settings.LIFELINE_COOLDOWN_DAYS} days"),
            user_id,
            commitment_id,
        )

    new_deadline = commitment.deadline + extension()
    outcome = store.apply_lifeline(commitment.id, new_deadline, ts)
    if not outcome.updated:
        _reject(
            "conflict",
            ConcurrencyConflictError("Lifeline was already applied or the commitment changed"),
            user_id,
            commitment_id,
        )

    lifeline_requests_total.inc(labels={"result": "applied"})
    log_event(
        "info",
        "lifeline.applied",
        user_id=user_id,
        commitment_id=commitment_id,
        extra={"new_deadline": new_deadline.isoformat()},
    )
    return LifelineResult(new_deadline=new_deadline, commitment=store.get_commitment(commitment.id))

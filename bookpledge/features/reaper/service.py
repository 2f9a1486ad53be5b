"""
Deadline Reaper.

Normal pass: overdue active commitments -> defaulted -> penalty charge.
Retry pass: charges still pending/failed with attempts left and a due
next_retry_at, plus defaulted commitments that never got a charge row.

Each commitment is an isolated unit of work on a bounded thread pool. A unit
that raises is recorded in ``SweepStats.errors`` and the observability sink;
the rest of the batch carries on. All cross-invocation safety comes from
conditional writes in the commitment store and the penalty ledger, so
overlapping sweeps are harmless: the loser of every race is a silent skip.
"""
from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import insert

from bookpledge.core.config import settings
from bookpledge.core.database import get_db_session, reaper_job_runs
from bookpledge.core.logging import log_business_event, log_event
from bookpledge.core.metrics import penalty_charges_total, reaper_commitments_total, reaper_last_run_timestamp
from bookpledge.core.observability import capture_exception, start_span
from bookpledge.core.timeutil import utc_now
from bookpledge.features.commitments import store
from bookpledge.features.commitments.lifecycle import TransitionResult
from bookpledge.features.notifications.dispatcher import NotificationDispatcher, NullDispatcher
from bookpledge.features.penalties import ledger
from bookpledge.features.penalties.gateway import (
    ZERO_DECIMAL_CURRENCIES,
    ChargeOutcome,
    PaymentGateway,
    idempotency_key_for,
)
from bookpledge.features.users.store import get_payment_refs
from bookpledge.models.commitment import Commitment
from bookpledge.models.penalty import PenaltyCharge

logger = logging.getLogger("bookpledge")

JOB_NAME = "deadline_reaper"


@dataclass
class SweepStats:
    processed: int = 0
    defaulted: int = 0
    charged: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class _Accumulator:
    """Lock-protected stats for one run."""

    def __init__(self):
        self._lock = threading.Lock()
        self.stats = SweepStats()

    def add(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self.stats, name, getattr(self.stats, name) + amount)

    def error(self, message: str) -> None:
        with self._lock:
            self.stats.errors.append(message)


def format_amount(amount, currency: str) -> str:
    value = Decimal(str(amount))
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return f"{value:,.0f} {currency.upper()}"
    return f"{value:,.2f} {currency.upper()}"


class _Sweep:
    def __init__(
        self,
        now: datetime,
        mode: str,
        gateway: PaymentGateway,
        dispatcher: NotificationDispatcher,
        max_attempts: int,
        retry_interval: timedelta,
    ):
        self.now = now
        self.mode = mode
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.max_attempts = max_attempts
        self.retry_interval = retry_interval
        self.acc = _Accumulator()

    def _count(self, result: str) -> None:
        reaper_commitments_total.inc(labels={"mode": self.mode, "result": result})

    def _notify(self, user_id: str, title: str, body: str, data: Dict[str, Any]) -> None:
        try:
            self.dispatcher.send_batch([user_id], title, body, data)
        except Exception as e:
            capture_exception(e, {"source": "push", "user_id": user_id})

    # Units of work

    def default_and_charge(self, commitment: Commitment) -> None:
        result = store.mark_defaulted(commitment.id, self.now)
        if result is not TransitionResult.UPDATED:
            # Another invocation (or a status change) won the race
            self.acc.add("skipped")
            self._count("skipped")
            return
        self.acc.add("defaulted")
        self._count("defaulted")
        log_event("info", "reaper.defaulted", user_id=commitment.user_id, commitment_id=commitment.id)
        self.charge_commitment(commitment)

    def charge_commitment(self, commitment: Commitment) -> None:
        customer_ref, payment_method_ref = get_payment_refs(commitment.user_id)
        charge, created = ledger.get_or_create_charge(commitment, customer_ref, payment_method_ref, self.now)
        if not created:
            log_event("info", "reaper.charge_exists", commitment_id=commitment.id, extra={"charge_id": charge.id})
        self.attempt(charge)

    def attempt(self, charge: PenaltyCharge) -> None:
        if charge.is_settled:
            self.acc.add("skipped")
            return

        if charge.attempt_count >= self.max_attempts:
            if charge.failure_code != ledger.MAX_ATTEMPTS_EXCEEDED:
                ledger.record_exhausted(
                    charge.id,
                    charge.last_error or "Maximum charge attempts exceeded",
                    self.now,
                    code=charge.failure_code,
                )
            self.acc.add("skipped")
            return

        if not ledger.claim_attempt(charge, self.now, lease=self.retry_interval).updated:
            self.acc.add("skipped")
            self._count("skipped")
            return

        attempt = charge.attempt_count + 1
        customer_ref, payment_method_ref = get_payment_refs(charge.user_id)
        result = self.gateway.charge(
            customer_ref or charge.customer_ref,
            payment_method_ref or charge.payment_method_ref,
            charge.amount,
            charge.currency,
            idempotency_key_for(charge.id, attempt),
            {"commitment_id": charge.commitment_id, "penalty_charge_id": charge.id},
        )
        penalty_charges_total.inc(labels={"outcome": result.outcome.value})
        amount_text = format_amount(charge.amount, charge.currency)
        data = {"type": "penalty", "commitment_id": charge.commitment_id}

        if result.outcome is ChargeOutcome.SUCCEEDED:
            ledger.record_success(charge.id, result.payment_intent_id, self.now)
            self.acc.add("charged")
            self._count("charged")
            log_event("info", "reaper.charged", user_id=charge.user_id, commitment_id=charge.commitment_id,
                      extra={"attempt": attempt, "payment_intent_id": result.payment_intent_id})
            self._notify(
                charge.user_id,
                "Commitment expired",
                f"Your reading commitment expired. {amount_text} has been charged to your card.",
                {**data, "status": "charged"},
            )
            return

        self.acc.add("failed")
        self._count("failed")
        exhausted = attempt >= self.max_attempts
        log_event(
            "warning",
            "reaper.charge_failed",
            user_id=charge.user_id,
            commitment_id=charge.commitment_id,
            error_code=result.failure_code,
            extra={"attempt": attempt, "outcome": result.outcome.value, "reason": result.failure_reason},
        )

        if exhausted:
            ledger.record_exhausted(charge.id, result.failure_reason, self.now, code=result.failure_code)
            self._notify(
                charge.user_id,
                "Payment failed",
                f"We couldn't process the {amount_text} charge after {attempt} attempts. Please update your payment method.",
                {**data, "status": "failed"},
            )
            return

        next_retry_at = self.now + self.retry_interval
        if result.outcome is ChargeOutcome.TRANSIENT_ERROR:
            # Quiet retry: the user hears about it only if it keeps failing
            ledger.record_transient(charge.id, result.failure_reason, self.now, next_retry_at)
            return

        ledger.record_decline(
            charge.id,
            result.failure_reason,
            result.failure_code,
            self.now,
            next_retry_at,
            payment_intent_id=result.payment_intent_id,
        )
        self._notify(
            charge.user_id,
            "Payment failed",
            f"We couldn't process the {amount_text} charge. Please update your payment method.",
            {**data, "status": "failed"},
        )

    # Execution

    def run_units(self, units: List[Callable[[], None]], labels: List[str], max_workers: int) -> None:
        self.acc.add("processed", len(units))
        if not units:
            return
        with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
            futures = {executor.submit(unit): label for unit, label in zip(units, labels)}
            for future in as_completed(futures):
                label = futures[future]
                try:
                    future.result()
                except Exception as e:
                    # Exception text stays in the sink; callers only see the type
                    self.acc.error(f"{label}: {type(e).__name__}")
                    self._count("error")
                    capture_exception(e, {"source": "reaper", "unit": label, "mode": self.mode})


def _record_run(mode: str, started_at: datetime, finished_at: datetime, stats: SweepStats, source: Optional[str]) -> None:
    payload = stats.to_dict()
    if source:
        payload["source"] = source
    with get_db_session() as session:
        session.execute(
            insert(reaper_job_runs).values(
                job_name=JOB_NAME,
                mode=mode,
                started_at=started_at,
                finished_at=finished_at,
                status="partial" if stats.errors else "succeeded",
                stats_json=json.dumps(payload),
            )
        )


def run_deadline_sweep(
    now: Optional[datetime] = None,
    *,
    retry_mode: bool = False,
    gateway: PaymentGateway,
    dispatcher: Optional[NotificationDispatcher] = None,
    max_workers: Optional[int] = None,
    max_attempts: Optional[int] = None,
    limit: Optional[int] = None,
    source: Optional[str] = None,
) -> SweepStats:
    """Run one reaper pass and return its counts.

    Args:
        now: Sweep instant (defaults to current UTC time)
        retry_mode: Retry pass instead of the normal overdue scan
        gateway: PaymentGateway used for charges
        dispatcher: Push dispatcher (defaults to NullDispatcher)
        max_workers: Thread pool size (defaults to REAPER_MAX_WORKERS)
        max_attempts: Charge attempt cap (defaults to PENALTY_MAX_ATTEMPTS)
        limit: Batch size (defaults to REAPER_BATCH_LIMIT / REAPER_RETRY_LIMIT)
        source: Free-form trigger label recorded with the run
    """
    ts = now or utc_now()
    mode = "retry" if retry_mode else "normal"
    started_at = utc_now()
    sweep = _Sweep(
        now=ts,
        mode=mode,
        gateway=gateway,
        dispatcher=dispatcher or NullDispatcher(),
        max_attempts=max_attempts or settings.PENALTY_MAX_ATTEMPTS,
        retry_interval=timedelta(hours=settings.PENALTY_RETRY_INTERVAL_HOURS),
    )
    workers = max_workers or settings.REAPER_MAX_WORKERS

    with start_span("reaper.sweep", {"reaper.mode": mode}):
        units: List[Callable[[], None]] = []
        labels: List[str] = []
        if retry_mode:
            batch = limit or settings.REAPER_RETRY_LIMIT
            for charge in ledger.select_retryable(ts, sweep.max_attempts, batch):
                units.append(lambda c=charge: sweep.attempt(c))
                labels.append(f"charge:{charge.id}")
            for commitment in store.select_defaulted_without_charge(batch):
                units.append(lambda c=commitment: sweep.charge_commitment(c))
                labels.append(f"commitment:{commitment.id}")
        else:
            for commitment in store.select_overdue(ts, limit or settings.REAPER_BATCH_LIMIT):
                units.append(lambda c=commitment: sweep.default_and_charge(c))
                labels.append(f"commitment:{commitment.id}")

        sweep.run_units(units, labels, workers)

    stats = sweep.acc.stats
    finished_at = utc_now()
    try:
        _record_run(mode, started_at, finished_at, stats, source)
    except Exception as e:
        capture_exception(e, {"source": "reaper", "step": "record_run"})

    reaper_last_run_timestamp.set(finished_at.timestamp(), labels={"mode": mode})
    log_business_event("reaper_run_complete", {"mode": mode, "source": source, **stats.to_dict()})
    return stats

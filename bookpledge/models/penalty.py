from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Mapping, Optional

from bookpledge.core.timeutil import ensure_utc

PenaltyOutcome = Literal["pending", "succeeded", "failed"]


@dataclass
class PenaltyCharge:
    """
    Charge attempt series for one defaulted commitment (at most one per commitment).
    """

    id: str
    commitment_id: str
    user_id: str
    amount: Decimal
    currency: str
    outcome: str = "pending"
    attempt_count: int = 0
    last_error: Optional[str] = None
    failure_code: Optional[str] = None
    payment_intent_id: Optional[str] = None
    customer_ref: Optional[str] = None
    payment_method_ref: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PenaltyCharge":
        return cls(
            id=row["id"],
            commitment_id=row["commitment_id"],
            user_id=row["user_id"],
            amount=Decimal(str(row["amount"])),
            currency=row["currency"],
            outcome=row["outcome"],
            attempt_count=int(row["attempt_count"] or 0),
            last_error=row["last_error"],
            failure_code=row["failure_code"],
            payment_intent_id=row["payment_intent_id"],
            customer_ref=row["customer_ref"],
            payment_method_ref=row["payment_method_ref"],
            last_attempt_at=ensure_utc(row["last_attempt_at"]),
            next_retry_at=ensure_utc(row["next_retry_at"]),
            created_at=ensure_utc(row["created_at"]),
            updated_at=ensure_utc(row["updated_at"]),
        )

    @property
    def is_settled(self) -> bool:
        return self.outcome == "succeeded"

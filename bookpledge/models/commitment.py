from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Mapping, Optional

from bookpledge.core.timeutil import ensure_utc

CommitmentStatusValue = Literal["pending", "in_progress", "completed", "defaulted", "cancelled"]


@dataclass
class Commitment:
    """
    A user's pledge to finish a book by a deadline. UTC only, no DB session concerns.
    """

    id: str
    user_id: str
    book_id: str
    status: str
    deadline: datetime
    pledge_amount: Decimal
    currency: str = "USD"
    is_freeze_used: bool = False
    defaulted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Commitment":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            status=row["status"],
            deadline=ensure_utc(row["deadline"]),
            pledge_amount=Decimal(str(row["pledge_amount"])),
            currency=(row["currency"] or "USD").upper(),
            is_freeze_used=bool(row["is_freeze_used"]),
            defaulted_at=ensure_utc(row["defaulted_at"]),
            created_at=ensure_utc(row["created_at"]),
            updated_at=ensure_utc(row["updated_at"]),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "status": self.status,
            "deadline": self.deadline.isoformat(),
            "pledge_amount": str(self.pledge_amount),
            "currency": self.currency,
            "is_freeze_used": self.is_freeze_used,
            "defaulted_at": self.defaulted_at.isoformat() if self.defaulted_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

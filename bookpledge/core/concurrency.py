"""
Optimistic concurrency primitive.

Every lifecycle mutation in the service is a single conditional UPDATE:
"update row X only if column Y still holds Z". Zero matched rows is a normal
outcome (another invocation got there first) and is reported as
``UpdateOutcome.CONFLICT`` instead of raising.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable

from sqlalchemy import Table, and_, update
from sqlalchemy.orm import Session


class UpdateOutcome(str, Enum):
    UPDATED = "updated"
    CONFLICT = "conflict"

    @property
    def updated(self) -> bool:
        return self is UpdateOutcome.UPDATED


def conditional_update(
    session: Session,
    table: Table,
    where: Iterable[Any],
    values: Dict[str, Any],
) -> UpdateOutcome:
    """Compare-and-swap style UPDATE.

    Args:
        session: Open session; the caller owns commit/rollback.
        table: Target table.
        where: Column expressions that must all hold at write time
            (identity plus the expected current values).
        values: Columns to set.

    Returns:
        UPDATED when at least one row matched, CONFLICT otherwise.
    """
    conditions = list(where)
    if not conditions:
        raise ValueError("conditional_update requires at least one condition")

    result = session.execute(
        update(table).where(and_(*conditions)).values(**values)
    )
    return UpdateOutcome.UPDATED if (result.rowcount or 0) > 0 else UpdateOutcome.CONFLICT

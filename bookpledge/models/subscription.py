"""
App Store server notification models.

Only the fields the reconciler reads are modelled; everything else in the
decoded payload is ignored.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional

SubscriptionStatus = Literal["active", "inactive"]


@dataclass
class TransactionInfo:
    original_transaction_id: Optional[str] = None
    transaction_id: Optional[str] = None
    product_id: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class AppStoreNotification:
    notification_uuid: Optional[str]
    notification_type: str
    subtype: Optional[str] = None
    signed_date: Optional[datetime] = None
    environment: Optional[str] = None
    transaction: Optional[TransactionInfo] = None


@dataclass
class SubscriptionState:
    user_id: str
    status: str = "inactive"
    expires_at: Optional[datetime] = None
    event_at: Optional[datetime] = None

"""
Subscription Reconciler: App Store server notifications -> user subscription state.

1. Decode both JWS layers (ValidationError -> 400)
2. Skip notifications whose UUID was already processed
3. TEST -> acknowledge only
4. Resolve the user by original transaction id (none -> acknowledge only)
5. Map (notificationType, subtype) onto a state change
6. Apply it unless a newer notification already landed (signedDate guard)
7. Record the UUID in the same transaction as the state change

Every decision short of a decode failure is an acknowledgment (HTTP 200), so
the provider stops redelivering.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError

from bookpledge.core.database import get_db_session
from bookpledge.core.idempotency import check_and_set, check_key, record_key
from bookpledge.core.logging import log_event
from bookpledge.core.metrics import billing_notifications_total
from bookpledge.core.timeutil import utc_now
from bookpledge.features.subscriptions.decoding import SignedPayloadDecoder, parse_notification
from bookpledge.features.users.store import apply_subscription_state, find_user_by_original_transaction
from bookpledge.models.subscription import AppStoreNotification

logger = logging.getLogger("bookpledge")

IDEMPOTENCY_SCOPE = "apple_notification"

ACTIVATING = {"SUBSCRIBED", "DID_RENEW", "OFFER_REDEEMED"}
EXPIRING = {"EXPIRED", "GRACE_PERIOD_EXPIRED"}
REVOKING = {"REFUND", "REVOKE"}


@dataclass
class ReconcileResult:
    action: str
    user_id: Optional[str] = None
    mutated: bool = False


@dataclass
class SubscriptionEffect:
    status: str
    expires_at: Optional[datetime] = None
    set_expires: bool = True


def subscription_effect(notification: AppStoreNotification, now: datetime) -> Optional[SubscriptionEffect]:
    """State change for a notification, or None when it changes nothing."""
    kind = notification.notification_type
    expires_at = notification.transaction.expires_at if notification.transaction else None

    if kind in ACTIVATING:
        return SubscriptionEffect(status="active", expires_at=expires_at)
    if kind in EXPIRING:
        return SubscriptionEffect(status="inactive", expires_at=expires_at)
    if kind == "DID_FAIL_TO_RENEW":
        if notification.subtype == "GRACE_PERIOD":
            return None
        return SubscriptionEffect(status="inactive", set_expires=False)
    if kind in REVOKING:
        return SubscriptionEffect(status="inactive", expires_at=now)
    # DID_CHANGE_RENEWAL_STATUS keeps access until expiry; unknown types are ignored
    return None


def _idempotency_key(notification: AppStoreNotification) -> Optional[str]:
    if not notification.notification_uuid:
        return None
    return f"{IDEMPOTENCY_SCOPE}:{notification.notification_uuid}"


def _acknowledge(key: Optional[str], action: str, user_id: Optional[str] = None) -> ReconcileResult:
    if key:
        check_and_set(key, IDEMPOTENCY_SCOPE)
    return ReconcileResult(action=action, user_id=user_id, mutated=False)


def apply_notification(
    signed_payload: str,
    now: Optional[datetime] = None,
    decoder: Optional[SignedPayloadDecoder] = None,
) -> ReconcileResult:
    ts = now or utc_now()
    decoder = decoder or SignedPayloadDecoder.from_settings()
    notification = parse_notification(signed_payload, decoder.decode)
    key = _idempotency_key(notification)

    result = _reconcile(notification, key, ts)
    billing_notifications_total.inc(labels={"action": result.action})
    log_event(
        "info",
        "billing.apple_notification",
        user_id=result.user_id,
        event_type=notification.notification_type,
        extra={
            "action": result.action,
            "subtype": notification.subtype,
            "notification_uuid": notification.notification_uuid,
            "mutated": result.mutated,
        },
    )
    return result


def _reconcile(notification: AppStoreNotification, key: Optional[str], now: datetime) -> ReconcileResult:
    if key and check_key(key):
        return ReconcileResult(action="duplicate")

    if notification.notification_type == "TEST":
        return _acknowledge(key, "test")

    original_id = notification.transaction.original_transaction_id if notification.transaction else None
    user_id = find_user_by_original_transaction(original_id) if original_id else None
    if user_id is None:
        logger.warning("billing.user_not_found", extra={"original_transaction_id": original_id})
        return _acknowledge(key, "user_not_found")

    effect = subscription_effect(notification, now)
    if effect is None:
        return _acknowledge(key, "no_change", user_id)

    # Notifications without signedDate are ordered by arrival
    event_at = notification.signed_date or now
    try:
        with get_db_session() as session:
            outcome = apply_subscription_state(
                session,
                user_id,
                event_at,
                status=effect.status,
                expires_at=effect.expires_at,
                set_expires=effect.set_expires,
            )
            if key:
                record_key(session, key, IDEMPOTENCY_SCOPE, now)
    except IntegrityError:
        # A concurrent delivery of the same notification committed first
        return ReconcileResult(action="duplicate", user_id=user_id)

    if not outcome.updated:
        return ReconcileResult(action="stale", user_id=user_id)
    return ReconcileResult(action="updated", user_id=user_id, mutated=True)

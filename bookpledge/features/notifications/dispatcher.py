"""
Notification Dispatcher: fire-and-forget push delivery to a user's devices.

Delivery failures are logged and counted, never raised: a broken push path
must not fail the reaper or any other caller.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol

import httpx
from sqlalchemy import insert, select, update

from bookpledge.core.config import settings
from bookpledge.core.database import get_db_session, push_tokens
from bookpledge.core.logging import log_business_event
from bookpledge.core.metrics import push_notifications_total

logger = logging.getLogger("bookpledge")

EXPO_BATCH_SIZE = 100


@dataclass
class DispatchResult:
    sent: int = 0
    failed: int = 0


class NotificationDispatcher(Protocol):
    def send_batch(
        self,
        user_ids: Iterable[str],
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        ...


class NullDispatcher:
    """Drops every notification (push not configured)."""

    def send_batch(self, user_ids, title, body, data=None) -> DispatchResult:
        logger.debug("push.skipped", extra={"title": title})
        return DispatchResult()


def register_push_token(user_id: str, token: str) -> None:
    """Store (or re-activate) a device token for a user."""
    with get_db_session() as session:
        existing = session.execute(
            select(push_tokens.c.id).where(push_tokens.c.token == token)
        ).first()
        if existing:
            session.execute(
                update(push_tokens)
                .where(push_tokens.c.id == existing.id)
                .values(user_id=user_id, is_active=True)
            )
        else:
            session.execute(insert(push_tokens).values(user_id=user_id, token=token, is_active=True))


def active_tokens(user_ids: Iterable[str]) -> List[str]:
    ids = sorted(set(user_ids))
    if not ids:
        return []
    with get_db_session() as session:
        rows = session.execute(
            select(push_tokens.c.token)
            .where(push_tokens.c.user_id.in_(ids))
            .where(push_tokens.c.is_active.is_(True))
        ).all()
    return [r.token for r in rows]


class ExpoPushDispatcher:
    """Posts messages to the Expo push API in batches of 100."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.api_url = api_url or settings.EXPO_PUSH_API_URL
        self.access_token = access_token or settings.EXPO_ACCESS_TOKEN
        self.timeout = timeout or settings.PUSH_TIMEOUT_SECONDS
        self._client = client

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _post(self, client: httpx.Client, batch: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        response = client.post(self.api_url, json=batch, headers=self._headers())
        response.raise_for_status()
        return response.json().get("data") or []

    def send_batch(
        self,
        user_ids: Iterable[str],
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> DispatchResult:
        user_ids = list(user_ids)
        tokens = active_tokens(user_ids)
        result = DispatchResult()
        if not tokens:
            return result

        messages = [
            {"to": token, "title": title, "body": body, "sound": "default", "data": data or {}}
            for token in tokens
        ]

        client = self._client or httpx.Client(timeout=self.timeout)
        try:
            for start in range(0, len(messages), EXPO_BATCH_SIZE):
                batch = messages[start:start + EXPO_BATCH_SIZE]
                try:
                    tickets = self._post(client, batch)
                except (httpx.HTTPError, ValueError) as e:
                    logger.warning("push.batch_failed", extra={"error_type": type(e).__name__, "size": len(batch)})
                    result.failed += len(batch)
                    continue
                ok = sum(1 for t in tickets if t.get("status") == "ok")
                errors = [t for t in tickets if t.get("status") == "error"]
                if errors:
                    logger.info("push.ticket_errors", extra={"errors": errors[:10]})
                result.sent += ok
                result.failed += len(batch) - ok
        finally:
            if self._client is None:
                client.close()

        push_notifications_total.inc(labels={"status": "ok"}, amount=result.sent)
        push_notifications_total.inc(labels={"status": "error"}, amount=result.failed)
        log_business_event("push_notification_batch", {
            "users": len(user_ids),
            "tokens": len(tokens),
            "sent": result.sent,
            "failed": result.failed,
        })
        return result


def build_dispatcher() -> NotificationDispatcher:
    """Dispatcher per configuration."""
    if settings.PUSH_ENABLED:
        return ExpoPushDispatcher()
    return NullDispatcher()

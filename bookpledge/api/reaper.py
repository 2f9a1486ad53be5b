"""
Reaper trigger (system callers only: scheduler / service role).

POST /api/reaper/run  {"retry_mode": false, "source": "cron"}
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from bookpledge.core.errors import AppError
from bookpledge.core.system_auth import SystemCaller, require_system_caller
from bookpledge.features.notifications.dispatcher import NotificationDispatcher, build_dispatcher
from bookpledge.features.penalties.gateway import PaymentGateway, PaymentGatewayError
from bookpledge.features.penalties.stripe_gateway import StripeGateway
from bookpledge.features.reaper.service import run_deadline_sweep

logger = logging.getLogger("bookpledge")

router = APIRouter(prefix="/api/reaper", tags=["reaper"])


class ReaperRunRequest(BaseModel):
    retry_mode: bool = False
    source: Optional[str] = None
    triggered_at: Optional[datetime] = None


class ReaperStats(BaseModel):
    processed: int
    defaulted: int
    charged: int
    failed: int
    skipped: int
    errors: list[str] = []


class ReaperRunResponse(BaseModel):
    success: bool
    mode: str
    stats: ReaperStats


def get_payment_gateway() -> PaymentGateway:
    try:
        return StripeGateway()
    except PaymentGatewayError as e:
        raise AppError(str(e), code="gateway_unavailable", status_code=503)


def get_notification_dispatcher() -> NotificationDispatcher:
    return build_dispatcher()


@router.post("/run", response_model=ReaperRunResponse)
def run_reaper(
    body: Optional[ReaperRunRequest] = None,
    caller: SystemCaller = Depends(require_system_caller),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """
    Run one reaper pass.

    Errors:
        401: missing Authorization header
        403: credential is not a system secret (user JWTs included)
        503: payment gateway not configured
    """
    body = body or ReaperRunRequest()
    mode = "retry" if body.retry_mode else "normal"
    logger.info("reaper.triggered", extra={"mode": mode, "source": body.source, "credential": caller.credential})

    stats = run_deadline_sweep(
        retry_mode=body.retry_mode,
        gateway=gateway,
        dispatcher=dispatcher,
        source=body.source,
    )
    return ReaperRunResponse(success=True, mode=mode, stats=ReaperStats(**stats.to_dict()))

"""
App Store Server Notifications v2 endpoint.

Any decision (applied, stale, duplicate, unknown user, ignored type) is a 200
so the provider stops retrying. Only a structurally invalid payload is a 400.
"""
from fastapi import APIRouter
from pydantic import BaseModel, Field

from bookpledge.features.subscriptions.reconciler import apply_notification

router = APIRouter(prefix="/api/billing", tags=["billing"])


class AppleNotificationRequest(BaseModel):
    signedPayload: str = Field(..., min_length=1)


class AppleNotificationResponse(BaseModel):
    success: bool
    action: str


@router.post("/apple/notifications", response_model=AppleNotificationResponse)
def apple_notifications(body: AppleNotificationRequest):
    result = apply_notification(body.signedPayload)
    return AppleNotificationResponse(success=True, action=result.action)

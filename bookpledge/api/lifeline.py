from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from bookpledge.core.auth import get_current_user_id
from bookpledge.features.lifeline.service import use_lifeline

router = APIRouter(prefix="/api/commitments", tags=["commitments"])


class LifelineRequest(BaseModel):
    commitment_id: str = Field(..., min_length=1)


class LifelineResponse(BaseModel):
    new_deadline: str
    commitment: dict


@router.post("/lifeline", response_model=LifelineResponse)
def post_lifeline(body: LifelineRequest, user_id: str = Depends(get_current_user_id)):
    """
    Extend a commitment's deadline by 7 days (once per commitment/book, once per 30 days).

    Errors (409 codes): invalid_state, already_used_for_book, cooldown_active, concurrent_conflict
    """
    result = use_lifeline(body.commitment_id, user_id)
    return LifelineResponse(
        new_deadline=result.new_deadline.isoformat(),
        commitment=result.commitment.to_dict(),
    )

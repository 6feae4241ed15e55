"""Public access API router — join the queue and check status."""

from fastapi import APIRouter, Depends, Request, Response, status

from access_manager.api.deps import get_policy, get_store
from access_manager.core.config import settings
from access_manager.core.rate_limiter import limiter
from access_manager.schemas.schemas import AccessRequestIn, AccessStatusOut, SubmissionOut
from access_manager.services.queue_engine import QueueEngine, SubmissionOutcome
from access_manager.services.request_store import RequestStore
from access_manager.services.settings_service import AccessPolicy

router = APIRouter(prefix="/access", tags=["access"])

SUBMISSION_MESSAGES = {
    SubmissionOutcome.created: "Request submitted successfully",
    SubmissionOutcome.resubmitted: "Request resubmitted successfully",
    SubmissionOutcome.already_active: "You already have active access",
}


@router.post("/request", response_model=SubmissionOut, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_PUBLIC)
async def submit_request(
    request: Request,
    response: Response,
    body: AccessRequestIn,
    store: RequestStore = Depends(get_store),
    policy: AccessPolicy = Depends(get_policy),
):
    """Join the queue, or rejoin after expiry/removal/failure.

    201 when queued, 200 when access is already active, 409 when already
    pending (body carries the current queue position).
    """
    result = QueueEngine(store, policy).submit_access_request(body.email, body.full_name)
    if not result.is_new:
        response.status_code = status.HTTP_200_OK
    return SubmissionOut(
        message=SUBMISSION_MESSAGES[result.outcome],
        request_id=result.request_id,
        email=result.email,
        status=result.status.value,
        queue_position=result.queue_position,
        estimated_wait=result.estimated_wait,
        expires_at=result.expires_at,
        days_remaining=result.days_remaining,
    )


@router.get("/status/{email}", response_model=AccessStatusOut)
@limiter.limit(settings.RATE_LIMIT_PUBLIC)
async def get_status(
    request: Request,
    email: str,
    store: RequestStore = Depends(get_store),
    policy: AccessPolicy = Depends(get_policy),
):
    """Current status for an email; 404 when no request exists."""
    view = QueueEngine(store, policy).get_access_status(email)
    return AccessStatusOut(
        status=view.status.value,
        queue_position=view.queue_position,
        estimated_wait=view.estimated_wait,
        created_at=view.created_at,
        activated_at=view.activated_at,
        expires_at=view.expires_at,
        days_remaining=view.days_remaining,
        slot_number=view.slot_number,
        message=view.message,
    )

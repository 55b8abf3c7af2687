"""
Request lifecycle endpoints.

Business rule violations raised by the state machine (insufficient credits,
invalid transitions, lost claim races...) are translated to HTTP responses by
the MarketplaceError handler registered in ``marketplace.main``.
"""
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from marketplace.api.deps import get_state_machine
from marketplace.core.auth_dependency import CurrentUser, get_current_user, get_db, require_roles
from marketplace.db.models.request import RequestStatus, ServiceRequest
from marketplace.db.models.user import UserRole
from marketplace.schemas.request import (
    AssignRequest,
    CancelRequest,
    CommentCreate,
    CommentOut,
    CostBreakdownOut,
    DeliverRequest,
    RatingCreate,
    RatingOut,
    RequestCreate,
    RequestDetail,
    RequestOut,
    RequestPage,
    RevisionCreate,
    RevisionQuoteOut,
    RevisionResult,
    StartWorkRequest,
)
from marketplace.services.cost_calculator import breakdown_for_request
from marketplace.services.request_service import RequestStateMachine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/requests", tags=["Requests"])

client_only = require_roles(UserRole.CLIENT)
provider_only = require_roles(UserRole.PROVIDER)
client_or_admin = require_roles(UserRole.CLIENT, UserRole.ADMIN)
provider_or_admin = require_roles(UserRole.PROVIDER, UserRole.ADMIN)


def to_detail(request: ServiceRequest) -> RequestDetail:
    breakdown = breakdown_for_request(request)
    return RequestDetail(
        **RequestOut.model_validate(request).model_dump(),
        cost_breakdown=CostBreakdownOut(
            base=breakdown.base,
            priority=breakdown.priority,
            revision_total=breakdown.revision_total,
            unit_cost=breakdown.unit_cost,
            revision_multiplier=breakdown.revision_multiplier,
            total=breakdown.total,
            display=breakdown.display,
        ),
        comments=[CommentOut.model_validate(c) for c in request.comments],
    )


@router.post("", response_model=RequestOut, status_code=status.HTTP_201_CREATED)
def create_request(
    payload: RequestCreate,
    user: CurrentUser = Depends(client_only),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    """
    Open a new request and debit its credit cost from the active subscription.

    Returns 402 with ``required``/``available`` when the balance is too low.
    """
    return machine.create_request(
        db,
        user,
        service_type_id=payload.service_type_id,
        priority=payload.priority,
        attribute_responses=[r.model_dump() for r in payload.attribute_responses],
        title=payload.title,
        description=payload.description,
    )


@router.get("", response_model=RequestPage)
def list_requests(
    status_filter: Optional[RequestStatus] = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    cursor: Optional[int] = None,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    requests, next_cursor = machine.list_requests(db, user, status=status_filter, limit=limit, cursor=cursor)
    return RequestPage(
        requests=[RequestOut.model_validate(r) for r in requests],
        next_cursor=next_cursor,
    )


@router.get("/available", response_model=List[RequestOut])
def available_jobs(
    limit: int = Query(50, ge=1, le=200),
    user: CurrentUser = Depends(provider_or_admin),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    """Open pool of unassigned PENDING requests."""
    return machine.available_jobs(db, limit=limit)


@router.get("/{request_id}", response_model=RequestDetail)
def get_request(
    request_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    return to_detail(machine.get_request(db, request_id, user))


@router.post("/{request_id}/claim", response_model=RequestOut)
def claim_request(
    request_id: int,
    user: CurrentUser = Depends(provider_only),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    """Returns 409 ``already_claimed`` when another provider got there first."""
    return machine.claim(db, request_id, user)


@router.post("/{request_id}/assign", response_model=RequestOut)
def assign_request(
    request_id: int,
    payload: AssignRequest,
    user: CurrentUser = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    return machine.assign(db, request_id, payload.provider_id, user)


@router.post("/{request_id}/unassign", response_model=RequestOut)
def unassign_request(
    request_id: int,
    user: CurrentUser = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    """Return a request that has not been started to the open pool."""
    return machine.unassign(db, request_id, user)


@router.post("/{request_id}/accept", response_model=RequestOut)
def accept_request(
    request_id: int,
    user: CurrentUser = Depends(provider_only),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    return machine.accept(db, request_id, user)


@router.post("/{request_id}/decline", response_model=RequestOut)
def decline_request(
    request_id: int,
    payload: Optional[CancelRequest] = None,
    user: CurrentUser = Depends(provider_only),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    return machine.decline(db, request_id, user, reason=payload.reason if payload else None)


@router.post("/{request_id}/start", response_model=RequestOut)
def start_work(
    request_id: int,
    payload: Optional[StartWorkRequest] = None,
    user: CurrentUser = Depends(provider_only),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    return machine.start_work(
        db, request_id, user, estimated_days=payload.estimated_days if payload else None,
    )


@router.post("/{request_id}/deliver", response_model=RequestOut)
def deliver(
    request_id: int,
    payload: Optional[DeliverRequest] = None,
    user: CurrentUser = Depends(provider_only),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    return machine.deliver(db, request_id, user, message=payload.message if payload else None)


@router.post("/{request_id}/resume", response_model=RequestOut)
def resume_work(
    request_id: int,
    user: CurrentUser = Depends(provider_only),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    return machine.resume_work(db, request_id, user)


@router.post("/{request_id}/approve", response_model=RequestOut)
def approve(
    request_id: int,
    user: CurrentUser = Depends(client_only),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    return machine.approve(db, request_id, user)


@router.get("/{request_id}/revision-quote", response_model=RevisionQuoteOut)
def revision_quote(
    request_id: int,
    user: CurrentUser = Depends(client_or_admin),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    """What the next revision will cost. Nothing is charged."""
    quote = machine.quote_revision(db, request_id, user)
    return RevisionQuoteOut(**quote.__dict__)


@router.post("/{request_id}/revisions", response_model=RevisionResult)
def request_revision(
    request_id: int,
    payload: RevisionCreate,
    user: CurrentUser = Depends(client_only),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    outcome = machine.request_revision(db, request_id, user, payload.feedback)
    return RevisionResult(
        request=RequestOut.model_validate(outcome.request),
        revision_type=outcome.revision.type,
        revision_cost=outcome.revision.cost,
        credits_remaining=outcome.credits_remaining,
    )


@router.post("/{request_id}/cancel", response_model=RequestOut)
def cancel_request(
    request_id: int,
    payload: Optional[CancelRequest] = None,
    user: CurrentUser = Depends(client_or_admin),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    """Cancel a non-terminal request; its credit cost is refunded in full."""
    return machine.cancel(db, request_id, user, reason=payload.reason if payload else None)


@router.post("/{request_id}/rating", response_model=RatingOut, status_code=status.HTTP_201_CREATED)
def rate_request(
    request_id: int,
    payload: RatingCreate,
    user: CurrentUser = Depends(client_only),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    return machine.rate(db, request_id, user, payload.rating, payload.review_text)


@router.post("/{request_id}/comments", response_model=CommentOut, status_code=status.HTTP_201_CREATED)
def add_comment(
    request_id: int,
    payload: CommentCreate,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    machine: RequestStateMachine = Depends(get_state_machine),
):
    return machine.add_comment(db, request_id, user, payload.content)

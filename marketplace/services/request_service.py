"""
Request lifecycle engine.

Legal transitions (actor in parentheses):

    PENDING            -> APPROVED            (provider: claim from the pool, or accept an assignment)
    PENDING            -> CANCELLED           (assigned provider declines)
    PENDING, APPROVED  -> PENDING             (admin unassigns the provider)
    APPROVED           -> IN_PROGRESS         (provider)
    IN_PROGRESS        -> DELIVERED           (provider)
    DELIVERED          -> COMPLETED           (client)
    DELIVERED          -> REVISION_REQUESTED  (client)
    REVISION_REQUESTED -> IN_PROGRESS         (provider)
    any non-terminal   -> CANCELLED           (client or admin, full refund)

Provider moves are also filtered on the acting provider, so only the assigned
provider can make them. Admins have no override on provider or client moves.

Every status change is a conditional UPDATE filtered on the expected current
status, so two racing actors cannot both move the same request. Creation and paid
revisions pair a ledger debit with the request write in one transaction.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from marketplace.core import config
from marketplace.core.clock import utcnow
from marketplace.core.errors import (
    AlreadyClaimed,
    AlreadyRated,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from marketplace.db.models.rating import Rating
from marketplace.db.models.request import RequestStatus, ServiceRequest
from marketplace.db.models.request_comment import CommentType, RequestComment
from marketplace.db.models.service_type import ServiceType
from marketplace.db.models.user import User, UserRole
from marketplace.services.attribute_validation import ensure_valid_attribute_responses
from marketplace.services.cache_invalidation import CacheInvalidator
from marketplace.services.cost_calculator import (
    PriorityCostTable,
    RevisionCost,
    compute_creating_cost,
    compute_revision_cost,
    validate_priority,
)
from marketplace.services.ledger_service import CreditLedger
from marketplace.services.notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)

NON_TERMINAL_STATUSES = tuple(s for s in RequestStatus if not s.is_terminal)
# Held by a provider but not started: claims lose with AlreadyClaimed, admins may unassign
HELD_STATUSES = (RequestStatus.PENDING, RequestStatus.APPROVED)


@dataclass(frozen=True)
class RevisionQuote:
    current_count: int
    max_free: int
    total_revisions: int
    next_cost: int
    next_type: str
    free_remaining: int


@dataclass(frozen=True)
class RevisionOutcome:
    request: ServiceRequest
    revision: RevisionCost
    credits_remaining: Optional[int]


def _label(status: RequestStatus) -> str:
    return status.value.replace("_", " ")


class RequestStateMachine:
    def __init__(
        self,
        ledger: CreditLedger,
        dispatcher: NotificationDispatcher,
        cache: Optional[CacheInvalidator] = None,
    ):
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.cache = cache or CacheInvalidator(None)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_request(
        self,
        db: Session,
        actor,
        service_type_id: int,
        priority: int,
        attribute_responses: Optional[List[Dict[str, Any]]] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> ServiceRequest:
        """
        Open a request and pay for it.

        The ledger debit and the request insert share one transaction: if the debit
        fails nothing is persisted, and if the insert fails the debit is rolled back.
        """
        if actor.role != UserRole.CLIENT:
            raise Forbidden("Only clients can open requests")

        service_type = (
            db.query(ServiceType)
            .filter(ServiceType.id == service_type_id, ServiceType.is_active.is_(True))
            .first()
        )
        if not service_type:
            raise NotFound("Service type", service_type_id)

        validate_priority(priority)
        attribute_responses = attribute_responses or []
        ensure_valid_attribute_responses(service_type.attributes or [], attribute_responses)

        table = PriorityCostTable.from_service_type(service_type)
        base_cost = service_type.base_credit_cost or 0
        priority_cost = table.for_priority(priority)
        total_cost = compute_creating_cost(base_cost, priority, table)

        subscription = self.ledger.get_active(db, actor.user_id)
        if not subscription:
            raise NotFound("Active subscription")

        try:
            if total_cost > 0:
                self.ledger.debit(
                    db,
                    subscription.id,
                    total_cost,
                    reason=f"New request for service {service_type.name} (priority {priority})",
                    commit=False,
                )

            request = ServiceRequest(
                client_id=actor.user_id,
                service_type_id=service_type.id,
                subscription_id=subscription.id,
                title=title or service_type.name,
                description=description,
                status=RequestStatus.PENDING,
                priority=priority,
                credit_cost=total_cost,
                base_credit_cost=base_cost,
                priority_credit_cost=priority_cost,
                revision_credit_cost=0,
                attribute_responses=attribute_responses,
            )
            db.add(request)
            db.flush()
            self._add_comment(
                db, request.id, actor.user_id,
                "Request created. Waiting for a provider to accept.",
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(request)
        self.cache.invalidate_request(request.id, client_id=request.client_id)
        self.cache.invalidate_subscription(actor.user_id)

        logger.info(
            f"Request created: request_id={request.id}, client_id={actor.user_id}, "
            f"credit_cost={total_cost}, priority={priority}"
        )
        return request

    # ------------------------------------------------------------------
    # Provider side
    # ------------------------------------------------------------------

    def claim(self, db: Session, request_id: int, actor) -> ServiceRequest:
        """Take an unassigned PENDING request from the open pool. Exactly one racing provider wins."""
        if actor.role != UserRole.PROVIDER:
            raise Forbidden("Only providers can claim requests")

        request = self._load(db, request_id)
        if request.status != RequestStatus.PENDING or request.provider_id is not None:
            raise self._claim_conflict(request)

        matched = (
            db.query(ServiceRequest)
            .filter(
                ServiceRequest.id == request_id,
                ServiceRequest.status == RequestStatus.PENDING,
                ServiceRequest.provider_id.is_(None),
            )
            .update(
                {
                    ServiceRequest.provider_id: actor.user_id,
                    ServiceRequest.status: RequestStatus.APPROVED,
                    ServiceRequest.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        if not matched:
            current = db.get(ServiceRequest, request_id, populate_existing=True)
            error = self._claim_conflict(current)
            db.rollback()
            if isinstance(error, AlreadyClaimed):
                logger.info(f"Claim lost race: request_id={request_id}, provider_id={actor.user_id}")
            raise error

        self._add_comment(db, request_id, actor.user_id, "Request accepted by provider.")
        request = self._commit(db, request_id)

        self._notify(
            db, request.client_id,
            "Request Accepted",
            f'Your request "{request.title}" has been accepted by a provider.',
            link=f"/client/requests/{request.id}",
            type="status_change",
        )
        return request

    def assign(self, db: Session, request_id: int, provider_id: int, actor) -> ServiceRequest:
        """Admin hands an unassigned PENDING request to a provider, who then accepts or declines."""
        if not actor.is_admin:
            raise Forbidden("Only admins can assign providers")

        provider = db.get(User, provider_id)
        if not provider or provider.role != UserRole.PROVIDER:
            raise NotFound("Provider", provider_id)

        request = self._load(db, request_id)
        if request.status != RequestStatus.PENDING:
            raise InvalidTransition(request.status.value, RequestStatus.PENDING.value)

        matched = (
            db.query(ServiceRequest)
            .filter(
                ServiceRequest.id == request_id,
                ServiceRequest.status == RequestStatus.PENDING,
                ServiceRequest.provider_id.is_(None),
            )
            .update(
                {ServiceRequest.provider_id: provider_id, ServiceRequest.updated_at: utcnow()},
                synchronize_session=False,
            )
        )
        if not matched:
            db.rollback()
            raise AlreadyClaimed(request_id)

        self._add_comment(db, request_id, actor.user_id, f"Request assigned to {provider.full_name}.")
        request = self._commit(db, request_id)

        self._notify(
            db, provider_id,
            "New Request Assigned",
            f"You have been assigned to: {request.title}",
            link="/provider/my-requests",
            type="assignment",
        )
        return request

    def unassign(self, db: Session, request_id: int, actor) -> ServiceRequest:
        """Admin puts an assigned request that has not been started back into the open pool."""
        if not actor.is_admin:
            raise Forbidden("Only admins can unassign providers")

        request = self._load(db, request_id)
        if request.status not in HELD_STATUSES:
            raise InvalidTransition(request.status.value, RequestStatus.PENDING.value)
        if request.provider_id is None:
            raise ValidationFailed(["Request is not assigned to any provider"])

        previous_provider = request.provider_id
        matched = (
            db.query(ServiceRequest)
            .filter(
                ServiceRequest.id == request_id,
                ServiceRequest.status.in_(HELD_STATUSES),
                ServiceRequest.provider_id == previous_provider,
            )
            .update(
                {
                    ServiceRequest.provider_id: None,
                    ServiceRequest.status: RequestStatus.PENDING,
                    ServiceRequest.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        if not matched:
            current = db.get(ServiceRequest, request_id, populate_existing=True)
            db.rollback()
            raise InvalidTransition(current.status.value, RequestStatus.PENDING.value)

        self._add_comment(db, request_id, actor.user_id, "Provider unassigned. Request returned to the open pool.")
        request = self._commit(db, request_id)
        self.cache.invalidate_request(request_id, provider_id=previous_provider)

        logger.info(f"Request unassigned: request_id={request_id}, provider_id={previous_provider}")
        self._notify(
            db, previous_provider,
            "Request Unassigned",
            f'You are no longer assigned to "{request.title}"',
            link="/provider/my-requests",
            type="assignment",
        )
        return request

    def accept(self, db: Session, request_id: int, actor) -> ServiceRequest:
        request = self._load(db, request_id)
        self._require_assigned_provider(request, actor)
        return self._move(
            db, request, actor, (RequestStatus.PENDING,), RequestStatus.APPROVED,
            provider_id=actor.user_id,
            comment="Request accepted by provider.",
        )

    def decline(self, db: Session, request_id: int, actor, reason: Optional[str] = None) -> ServiceRequest:
        """Assigned provider turns a PENDING request down. The client is refunded in full."""
        request = self._load(db, request_id)
        self._require_assigned_provider(request, actor)
        return self._cancel(
            db, request, actor, (RequestStatus.PENDING,), reason or "Declined by provider",
            provider_id=actor.user_id,
        )

    def start_work(self, db: Session, request_id: int, actor, estimated_days: Optional[int] = None) -> ServiceRequest:
        request = self._load(db, request_id)
        self._require_assigned_provider(request, actor)

        values = {}
        comment = "Work started."
        if estimated_days:
            estimated = utcnow() + timedelta(days=estimated_days)
            values[ServiceRequest.estimated_delivery] = estimated
            comment = f"Work started. Estimated delivery: {estimated.date().isoformat()}"

        return self._move(
            db, request, actor, (RequestStatus.APPROVED,), RequestStatus.IN_PROGRESS,
            provider_id=actor.user_id,
            values=values, comment=comment,
        )

    def deliver(self, db: Session, request_id: int, actor, message: Optional[str] = None) -> ServiceRequest:
        request = self._load(db, request_id)
        self._require_assigned_provider(request, actor)
        return self._move(
            db, request, actor, (RequestStatus.IN_PROGRESS,), RequestStatus.DELIVERED,
            provider_id=actor.user_id,
            comment=message or "Deliverable submitted.",
            comment_type=CommentType.DELIVERABLE,
            notify_title="Deliverable Ready",
            notify_message=f'Your request "{request.title}" has a new deliverable ready for review.',
        )

    def resume_work(self, db: Session, request_id: int, actor) -> ServiceRequest:
        """Provider picks a revision back up. ``credit_cost`` is recomputed from its components."""
        request = self._load(db, request_id)
        self._require_assigned_provider(request, actor)
        return self._move(
            db, request, actor, (RequestStatus.REVISION_REQUESTED,), RequestStatus.IN_PROGRESS,
            provider_id=actor.user_id,
            values={
                ServiceRequest.credit_cost: (
                    ServiceRequest.base_credit_cost
                    + ServiceRequest.priority_credit_cost
                    + ServiceRequest.revision_credit_cost
                ),
            },
            comment="Revision in progress.",
        )

    # ------------------------------------------------------------------
    # Client side
    # ------------------------------------------------------------------

    def approve(self, db: Session, request_id: int, actor) -> ServiceRequest:
        request = self._load(db, request_id)
        self._require_client_owner(request, actor)
        request = self._move(
            db, request, actor, (RequestStatus.DELIVERED,), RequestStatus.COMPLETED,
            values={ServiceRequest.completed_at: utcnow()},
            comment="Request approved and completed.",
            notify_client=False,
        )
        if request.provider_id:
            self._notify(
                db, request.provider_id,
                "Request Completed",
                f'Client has approved "{request.title}". Great job!',
                link=f"/provider/requests/{request.id}",
                type="status_change",
            )
        return request

    def quote_revision(self, db: Session, request_id: int, actor=None) -> RevisionQuote:
        """What the next revision will cost, shown to the client before anything is charged."""
        request = self._load(db, request_id)
        if actor is not None and not actor.is_admin:
            self._require_client_owner(request, actor)

        max_free, unit_cost = self._revision_terms(db, request)
        revision = compute_revision_cost(
            request, PriorityCostTable.from_service_type(request.service_type), max_free, unit_cost,
        )
        return RevisionQuote(
            current_count=request.current_revision_count,
            max_free=max_free,
            total_revisions=request.total_revisions,
            next_cost=revision.cost,
            next_type=revision.type,
            free_remaining=max(0, max_free - request.current_revision_count),
        )

    def request_revision(self, db: Session, request_id: int, actor, feedback: str) -> RevisionOutcome:
        """
        Send delivered work back for another pass.

        Free while the package's revision quota lasts; afterwards each revision debits
        the service's paid revision cost. If that debit fails the request stays DELIVERED.
        """
        request = self._load(db, request_id)
        self._require_client_owner(request, actor)
        if request.status != RequestStatus.DELIVERED:
            raise InvalidTransition(request.status.value, RequestStatus.REVISION_REQUESTED.value)
        if not feedback or not feedback.strip():
            raise ValidationFailed(["Please provide feedback for the revision"])

        max_free, unit_cost = self._revision_terms(db, request)
        revision = compute_revision_cost(
            request, PriorityCostTable.from_service_type(request.service_type), max_free, unit_cost,
        )

        credits_remaining = None
        try:
            if revision.cost > 0:
                subscription = self.ledger.get_active(db, request.client_id)
                if not subscription:
                    raise NotFound("Active subscription")
                debit = self.ledger.debit(
                    db,
                    subscription.id,
                    revision.cost,
                    reason=f"Paid revision for request {request.id}",
                    commit=False,
                )
                credits_remaining = debit.balance

            self._conditional_update(
                db,
                request,
                (RequestStatus.DELIVERED,),
                RequestStatus.REVISION_REQUESTED,
                {
                    ServiceRequest.current_revision_count: ServiceRequest.current_revision_count + 1,
                    ServiceRequest.total_revisions: ServiceRequest.total_revisions + 1,
                    ServiceRequest.is_revision: True,
                    ServiceRequest.revision_type: revision.type,
                    ServiceRequest.credit_cost: ServiceRequest.credit_cost + revision.cost,
                    ServiceRequest.revision_credit_cost: ServiceRequest.revision_credit_cost + revision.cost,
                },
            )

            number = request.current_revision_count + 1
            if revision.is_free:
                summary = f"Revision requested ({number}/{max_free} free revisions used)"
            else:
                summary = f"Paid revision requested ({revision.cost} credit(s) charged)"
            self._add_comment(db, request.id, actor.user_id, summary)
            self._add_comment(db, request.id, actor.user_id, feedback, CommentType.MESSAGE)
            request = self._commit(db, request.id)
        except Exception:
            db.rollback()
            raise

        if revision.cost > 0:
            self.cache.invalidate_subscription(request.client_id)

        logger.info(
            f"Revision requested: request_id={request.id}, type={revision.type}, "
            f"cost={revision.cost}, revision_count={request.current_revision_count}"
        )

        if request.provider_id:
            self._notify(
                db, request.provider_id,
                "Revision Requested",
                f'Client requested a {revision.type} revision for "{request.title}"',
                link=f"/provider/requests/{request.id}",
                type="status_change",
            )
        return RevisionOutcome(request=request, revision=revision, credits_remaining=credits_remaining)

    def cancel(self, db: Session, request_id: int, actor, reason: Optional[str] = None) -> ServiceRequest:
        """Client (owner) or admin cancels a non-terminal request; ``credit_cost`` is refunded in full."""
        request = self._load(db, request_id)
        if actor.role == UserRole.PROVIDER:
            raise Forbidden("Providers decline requests instead of cancelling them")
        if not actor.is_admin:
            self._require_client_owner(request, actor)
        return self._cancel(db, request, actor, NON_TERMINAL_STATUSES, reason)

    def rate(self, db: Session, request_id: int, actor, rating: int, review_text: Optional[str] = None) -> Rating:
        request = self._load(db, request_id)
        self._require_client_owner(request, actor)

        if request.status != RequestStatus.COMPLETED:
            raise InvalidTransition(request.status.value, "RATED")
        if not request.provider_id:
            raise NotFound("Provider for request", request_id)
        if not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationFailed(["Rating must be between 1 and 5"])
        if db.query(Rating).filter(Rating.request_id == request_id).first():
            raise AlreadyRated(request_id)

        entry = Rating(
            request_id=request_id,
            client_id=actor.user_id,
            provider_id=request.provider_id,
            rating=rating,
            review_text=review_text,
        )
        db.add(entry)
        try:
            db.commit()
        except IntegrityError:
            # unique(request_id) lost to a concurrent rating
            db.rollback()
            raise AlreadyRated(request_id)
        db.refresh(entry)

        self._notify(
            db, request.provider_id,
            "New Rating",
            f'You received a {rating}-star rating for "{request.title}"',
            link=f"/provider/requests/{request.id}",
            type="general",
        )
        return entry

    def add_comment(self, db: Session, request_id: int, actor, content: str) -> RequestComment:
        request = self._load(db, request_id)
        is_client = request.client_id == actor.user_id
        is_provider = request.provider_id == actor.user_id
        if not (is_client or is_provider or actor.is_admin):
            raise Forbidden("You don't have access to this request")
        if not content or not content.strip():
            raise ValidationFailed(["Comment cannot be empty"])

        comment = self._add_comment(db, request_id, actor.user_id, content, CommentType.MESSAGE)
        db.commit()
        db.refresh(comment)
        self.cache.invalidate_request(request_id)

        recipient = request.provider_id if is_client else request.client_id
        if recipient and recipient != actor.user_id:
            side = "provider" if is_client else "client"
            self._notify(
                db, recipient,
                "New Message",
                f'New message on "{request.title}"',
                link=f"/{side}/requests/{request.id}",
                type="message",
            )
        return comment

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_request(self, db: Session, request_id: int, actor) -> ServiceRequest:
        request = self._load(db, request_id)
        if actor.role == UserRole.CLIENT and request.client_id != actor.user_id:
            raise Forbidden("You don't have access to this request")
        if actor.role == UserRole.PROVIDER:
            in_pool = request.status == RequestStatus.PENDING and request.provider_id is None
            if request.provider_id != actor.user_id and not in_pool:
                raise Forbidden("You don't have access to this request")
        return request

    def list_requests(
        self,
        db: Session,
        actor,
        status: Optional[RequestStatus] = None,
        limit: int = 20,
        cursor: Optional[int] = None,
    ) -> Tuple[List[ServiceRequest], Optional[int]]:
        query = db.query(ServiceRequest)
        if actor.role == UserRole.CLIENT:
            query = query.filter(ServiceRequest.client_id == actor.user_id)
        elif actor.role == UserRole.PROVIDER:
            query = query.filter(ServiceRequest.provider_id == actor.user_id)
        if status is not None:
            query = query.filter(ServiceRequest.status == status)
        if cursor is not None:
            query = query.filter(ServiceRequest.id < cursor)

        requests = query.order_by(ServiceRequest.id.desc()).limit(limit).all()
        next_cursor = requests[-1].id if len(requests) == limit else None
        return requests, next_cursor

    def available_jobs(self, db: Session, limit: int = 50) -> List[ServiceRequest]:
        """The open pool providers poll: PENDING and unassigned, oldest first."""
        return (
            db.query(ServiceRequest)
            .filter(
                ServiceRequest.status == RequestStatus.PENDING,
                ServiceRequest.provider_id.is_(None),
            )
            .order_by(ServiceRequest.created_at.asc(), ServiceRequest.id.asc())
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self, db: Session, request_id: int) -> ServiceRequest:
        request = db.get(ServiceRequest, request_id, populate_existing=True)
        if not request:
            raise NotFound("Request", request_id)
        return request

    def _require_client_owner(self, request: ServiceRequest, actor) -> None:
        if actor.role != UserRole.CLIENT or request.client_id != actor.user_id:
            raise Forbidden("You don't own this request")

    def _require_assigned_provider(self, request: ServiceRequest, actor) -> None:
        # Admins move work only through assign, unassign and cancel
        if actor.role != UserRole.PROVIDER or request.provider_id != actor.user_id:
            raise Forbidden("You are not assigned to this request")

    def _claim_conflict(self, request: ServiceRequest):
        """The error for a claim on a request that is no longer in the open pool."""
        if request.provider_id is not None and request.status in HELD_STATUSES:
            return AlreadyClaimed(request.id)
        return InvalidTransition(request.status.value, RequestStatus.APPROVED.value)

    def _revision_terms(self, db: Session, request: ServiceRequest) -> Tuple[int, int]:
        """(free revisions allowed by the client's package, paid revision unit cost)."""
        subscription = self.ledger.get_active(db, request.client_id)
        if subscription and subscription.package:
            max_free = subscription.package.max_free_revisions or 0
        else:
            max_free = config.DEFAULT_MAX_FREE_REVISIONS
        return max_free, request.service_type.paid_revision_cost

    def _conditional_update(
        self,
        db: Session,
        request: ServiceRequest,
        from_statuses: Iterable[RequestStatus],
        to_status: RequestStatus,
        values: Optional[Dict] = None,
        provider_id: Optional[int] = None,
    ) -> None:
        """
        Apply ``values`` and the new status only if the row is still in one of ``from_statuses``
        and, when ``provider_id`` is given, still assigned to that provider.
        """
        from_statuses = tuple(from_statuses)
        if request.status not in from_statuses:
            raise InvalidTransition(request.status.value, to_status.value)

        values = dict(values or {})
        values[ServiceRequest.status] = to_status
        values[ServiceRequest.updated_at] = utcnow()

        query = db.query(ServiceRequest).filter(
            ServiceRequest.id == request.id, ServiceRequest.status.in_(from_statuses),
        )
        if provider_id is not None:
            query = query.filter(ServiceRequest.provider_id == provider_id)

        matched = query.update(values, synchronize_session=False)
        if not matched:
            current = db.get(ServiceRequest, request.id, populate_existing=True)
            if provider_id is not None and current.provider_id != provider_id:
                raise Forbidden("You are not assigned to this request")
            raise InvalidTransition(current.status.value, to_status.value)

    def _move(
        self,
        db: Session,
        request: ServiceRequest,
        actor,
        from_statuses: Iterable[RequestStatus],
        to_status: RequestStatus,
        values: Optional[Dict] = None,
        provider_id: Optional[int] = None,
        comment: Optional[str] = None,
        comment_type: str = CommentType.SYSTEM,
        notify_client: bool = True,
        notify_title: str = "Request Status Updated",
        notify_message: Optional[str] = None,
    ) -> ServiceRequest:
        old_status = request.status
        try:
            self._conditional_update(db, request, from_statuses, to_status, values, provider_id)
            if comment:
                self._add_comment(db, request.id, actor.user_id, comment, comment_type)
            request = self._commit(db, request.id)
        except Exception:
            db.rollback()
            raise

        logger.info(
            f"Request status changed: request_id={request.id}, "
            f"{old_status.value} -> {to_status.value}, actor={actor.user_id}"
        )

        if notify_client:
            self._notify(
                db, request.client_id,
                notify_title,
                notify_message or (
                    f'Your request "{request.title}" status changed from '
                    f"{_label(old_status)} to {_label(to_status)}"
                ),
                link=f"/client/requests/{request.id}",
                type="status_change",
            )
        return request

    def _cancel(
        self,
        db: Session,
        request: ServiceRequest,
        actor,
        from_statuses: Iterable[RequestStatus],
        reason: Optional[str],
        provider_id: Optional[int] = None,
    ) -> ServiceRequest:
        old_status = request.status
        refund = request.credit_cost or 0
        try:
            self._conditional_update(
                db, request, from_statuses, RequestStatus.CANCELLED,
                {ServiceRequest.cancelled_at: utcnow()},
                provider_id=provider_id,
            )
            if refund > 0:
                # Refund lands on the client's current subscription, else the one that paid
                active = self.ledger.get_active(db, request.client_id)
                target = active.id if active else request.subscription_id
                self.ledger.credit(
                    db, target, refund,
                    reason=f"Refund for cancelled request {request.id}",
                    commit=False,
                )
            note = f"Request cancelled. {refund} credit(s) refunded."
            if reason:
                note = f"{note} Reason: {reason}"
            self._add_comment(db, request.id, actor.user_id, note)
            request = self._commit(db, request.id)
        except Exception:
            db.rollback()
            raise

        self.cache.invalidate_subscription(request.client_id)
        logger.info(
            f"Request cancelled: request_id={request.id}, from={old_status.value}, "
            f"refund={refund}, actor={actor.user_id}"
        )

        recipients = {request.client_id, request.provider_id} - {None, actor.user_id}
        for user_id in recipients:
            side = "client" if user_id == request.client_id else "provider"
            self._notify(
                db, user_id,
                "Request Cancelled",
                f'Request "{request.title}" was cancelled.',
                link=f"/{side}/requests/{request.id}",
                type="status_change",
            )
        return request

    def _commit(self, db: Session, request_id: int) -> ServiceRequest:
        db.commit()
        request = db.get(ServiceRequest, request_id, populate_existing=True)
        self.cache.invalidate_request(request.id, request.client_id, request.provider_id)
        return request

    def _add_comment(
        self,
        db: Session,
        request_id: int,
        user_id: int,
        content: str,
        type: str = CommentType.SYSTEM,
    ) -> RequestComment:
        comment = RequestComment(request_id=request_id, user_id=user_id, content=content, type=type)
        db.add(comment)
        return comment

    def _notify(self, db: Session, user_id: int, title: str, message: str, link: Optional[str], type: str) -> None:
        try:
            self.dispatcher.notify(db, user_id, title, message, link=link, type=type)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to store notification for user {user_id}: {e}")

"""
Unit tests for the request lifecycle engine.
Tests creation pricing, transitions, revisions, refunds and the claim race.
"""
import threading
from datetime import timedelta
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from marketplace.core.auth_dependency import CurrentUser
from marketplace.core.clock import utcnow
from marketplace.core.errors import (
    AlreadyClaimed,
    AlreadyRated,
    Forbidden,
    InsufficientCredits,
    InvalidPriority,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from marketplace.db.base import Base
from marketplace.db.models.notification import Notification
from marketplace.db.models.package import Package
from marketplace.db.models.request import RequestStatus, ServiceRequest
from marketplace.db.models.request_comment import CommentType, RequestComment
from marketplace.db.models.service_type import ServiceType
from marketplace.db.models.subscription import ClientSubscription
from marketplace.db.models.user import User, UserRole
from marketplace.services.ledger_service import CreditLedger
from marketplace.services.notification_service import NotificationDispatcher
from marketplace.services.realtime_registry import RealtimeRegistry
from marketplace.services.request_service import RequestStateMachine


def actor(user) -> CurrentUser:
    return CurrentUser(user_id=user.id, role=user.role)


@pytest.fixture
def registry():
    registry = Mock(spec=RealtimeRegistry)
    registry.send.return_value = True
    return registry


@pytest.fixture
def machine(registry):
    return RequestStateMachine(CreditLedger(), NotificationDispatcher(registry=registry))


@pytest.fixture
def client(make_user):
    return make_user(UserRole.CLIENT)


@pytest.fixture
def provider(make_user):
    return make_user(UserRole.PROVIDER)


@pytest.fixture
def admin(make_user):
    return make_user(UserRole.ADMIN)


@pytest.fixture
def service(make_service_type):
    return make_service_type(base_credit_cost=3, low=0, medium=1, high=2, paid_revision_cost=2)


def balance(db, subscription):
    db.refresh(subscription)
    return subscription.remaining_credits


def assert_cost_invariant(request):
    assert request.credit_cost == (
        request.base_credit_cost + request.priority_credit_cost + request.revision_credit_cost
    )


def delivered_request(db, machine, client, provider, service, priority=2):
    request = machine.create_request(db, actor(client), service.id, priority, title="Logo refresh")
    machine.claim(db, request.id, actor(provider))
    machine.start_work(db, request.id, actor(provider))
    return machine.deliver(db, request.id, actor(provider))


# ----------------------------------------------------------------------
# Creation
# ----------------------------------------------------------------------

def test_create_request_debits_base_plus_priority(db, machine, client, service, make_subscription):
    subscription = make_subscription(client, credits=5)

    request = machine.create_request(db, actor(client), service.id, 2, title="Logo refresh")

    assert balance(db, subscription) == 1
    assert request.status == RequestStatus.PENDING
    assert request.credit_cost == 4
    assert request.base_credit_cost == 3
    assert request.priority_credit_cost == 1
    assert request.subscription_id == subscription.id
    assert_cost_invariant(request)

    comments = db.query(RequestComment).filter(RequestComment.request_id == request.id).all()
    assert [c.type for c in comments] == [CommentType.SYSTEM]


def test_create_request_insufficient_credits_changes_nothing(db, machine, client, service, make_subscription):
    subscription = make_subscription(client, credits=5)
    machine.create_request(db, actor(client), service.id, 2)

    with pytest.raises(InsufficientCredits) as exc_info:
        machine.create_request(db, actor(client), service.id, 2)

    assert exc_info.value.required == 4
    assert exc_info.value.available == 1
    assert balance(db, subscription) == 1
    assert db.query(ServiceRequest).count() == 1


def test_create_request_title_defaults_to_service_name(db, machine, client, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 1)
    assert request.title == service.name
    assert request.credit_cost == 3


def test_create_request_invalid_priority(db, machine, client, service, make_subscription):
    subscription = make_subscription(client, credits=5)
    with pytest.raises(InvalidPriority):
        machine.create_request(db, actor(client), service.id, 4)
    assert balance(db, subscription) == 5


def test_create_request_missing_required_answers(db, machine, client, make_service_type, make_subscription):
    service = make_service_type(attributes=[{"question": "Brand name", "type": "text", "required": True}])
    subscription = make_subscription(client, credits=5)

    with pytest.raises(ValidationFailed) as exc_info:
        machine.create_request(db, actor(client), service.id, 1, attribute_responses=[])

    assert exc_info.value.errors == ['"Brand name" is required']
    assert balance(db, subscription) == 5


def test_create_request_without_subscription(db, machine, client, service):
    with pytest.raises(NotFound):
        machine.create_request(db, actor(client), service.id, 2)


def test_create_request_inactive_service(db, machine, client, make_service_type, make_subscription):
    make_subscription(client, credits=5)
    service = make_service_type(is_active=False)
    with pytest.raises(NotFound):
        machine.create_request(db, actor(client), service.id, 2)


def test_only_clients_create_requests(db, machine, provider, service):
    with pytest.raises(Forbidden):
        machine.create_request(db, actor(provider), service.id, 2)


def test_zero_cost_request_skips_debit(db, machine, client, make_service_type, make_subscription):
    service = make_service_type(base_credit_cost=0, low=0)
    subscription = make_subscription(client, credits=0)

    request = machine.create_request(db, actor(client), service.id, 1)

    assert request.credit_cost == 0
    assert balance(db, subscription) == 0


# ----------------------------------------------------------------------
# Transitions
# ----------------------------------------------------------------------

def test_claim_moves_to_approved_and_notifies_client(db, machine, registry, client, provider, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)

    claimed = machine.claim(db, request.id, actor(provider))

    assert claimed.status == RequestStatus.APPROVED
    assert claimed.provider_id == provider.id
    notification = db.query(Notification).filter(Notification.user_id == client.id).one()
    assert notification.type == "status_change"
    registry.send.assert_called_once()
    assert registry.send.call_args.args[0] == client.id


def test_second_claim_is_already_claimed(db, machine, client, provider, make_user, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)
    machine.claim(db, request.id, actor(provider))

    with pytest.raises(AlreadyClaimed):
        machine.claim(db, request.id, actor(make_user(UserRole.PROVIDER)))


def test_full_lifecycle(db, machine, client, provider, service, make_subscription):
    make_subscription(client, credits=5)
    request = delivered_request(db, machine, client, provider, service)
    assert request.status == RequestStatus.DELIVERED

    completed = machine.approve(db, request.id, actor(client))

    assert completed.status == RequestStatus.COMPLETED
    assert completed.completed_at is not None
    assert_cost_invariant(completed)
    types = [c.type for c in db.query(RequestComment).filter(RequestComment.request_id == request.id)]
    assert CommentType.DELIVERABLE in types


def test_start_work_sets_estimated_delivery(db, machine, client, provider, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)
    machine.claim(db, request.id, actor(provider))

    started = machine.start_work(db, request.id, actor(provider), estimated_days=3)

    assert started.status == RequestStatus.IN_PROGRESS
    assert started.estimated_delivery > utcnow() + timedelta(days=2)


def test_illegal_transitions(db, machine, client, provider, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)
    machine.claim(db, request.id, actor(provider))

    with pytest.raises(InvalidTransition) as exc_info:
        machine.deliver(db, request.id, actor(provider))
    assert exc_info.value.current == "APPROVED"
    assert exc_info.value.requested == "DELIVERED"

    with pytest.raises(InvalidTransition):
        machine.approve(db, request.id, actor(client))


def test_only_assigned_provider_can_work(db, machine, client, provider, make_user, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)
    machine.claim(db, request.id, actor(provider))

    with pytest.raises(Forbidden):
        machine.start_work(db, request.id, actor(make_user(UserRole.PROVIDER)))
    with pytest.raises(Forbidden):
        machine.start_work(db, request.id, actor(client))


def test_assign_then_accept(db, machine, client, provider, admin, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)

    assigned = machine.assign(db, request.id, provider.id, actor(admin))
    assert assigned.status == RequestStatus.PENDING
    assert assigned.provider_id == provider.id
    notification = db.query(Notification).filter(Notification.user_id == provider.id).one()
    assert notification.type == "assignment"

    # assigned requests leave the open pool
    assert machine.available_jobs(db) == []

    accepted = machine.accept(db, request.id, actor(provider))
    assert accepted.status == RequestStatus.APPROVED


def test_assign_requires_admin_and_real_provider(db, machine, client, provider, admin, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)

    with pytest.raises(Forbidden):
        machine.assign(db, request.id, provider.id, actor(provider))
    with pytest.raises(NotFound):
        machine.assign(db, request.id, client.id, actor(admin))


def test_decline_refunds_client(db, machine, client, provider, admin, service, make_subscription):
    subscription = make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)
    machine.assign(db, request.id, provider.id, actor(admin))

    declined = machine.decline(db, request.id, actor(provider), reason="Too busy")

    assert declined.status == RequestStatus.CANCELLED
    assert balance(db, subscription) == 5


def test_admin_cannot_make_provider_moves(db, machine, client, provider, admin, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)

    with pytest.raises(Forbidden):
        machine.accept(db, request.id, actor(admin))
    with pytest.raises(Forbidden):
        machine.decline(db, request.id, actor(admin))
    untouched = machine.get_request(db, request.id, actor(admin))
    assert untouched.status == RequestStatus.PENDING
    assert untouched.provider_id is None

    machine.claim(db, request.id, actor(provider))
    with pytest.raises(Forbidden):
        machine.start_work(db, request.id, actor(admin))
    machine.start_work(db, request.id, actor(provider))
    with pytest.raises(Forbidden):
        machine.deliver(db, request.id, actor(admin))


def test_admin_cannot_act_as_client(db, machine, client, provider, admin, service, make_subscription):
    make_subscription(client, credits=5)
    request = delivered_request(db, machine, client, provider, service)

    with pytest.raises(Forbidden):
        machine.approve(db, request.id, actor(admin))
    with pytest.raises(Forbidden):
        machine.request_revision(db, request.id, actor(admin), "Bigger text")

    # reading the quote is fine
    assert machine.quote_revision(db, request.id, actor(admin)).current_count == 0


def test_provider_move_requires_row_still_assigned(db, machine, client, provider, make_user, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)
    machine.claim(db, request.id, actor(provider))
    stale = db.get(ServiceRequest, request.id)
    other = make_user(UserRole.PROVIDER)

    with pytest.raises(Forbidden):
        machine._conditional_update(
            db, stale, (RequestStatus.APPROVED,), RequestStatus.IN_PROGRESS, provider_id=other.id,
        )
    db.rollback()

    current = db.get(ServiceRequest, request.id, populate_existing=True)
    assert current.status == RequestStatus.APPROVED
    assert current.provider_id == provider.id


def test_claim_outside_open_pool_is_invalid_transition(db, machine, client, provider, admin, make_user, service, make_subscription):
    make_subscription(client, credits=10)
    declined = machine.create_request(db, actor(client), service.id, 2)
    machine.assign(db, declined.id, provider.id, actor(admin))
    machine.decline(db, declined.id, actor(provider))

    with pytest.raises(InvalidTransition) as exc_info:
        machine.claim(db, declined.id, actor(make_user(UserRole.PROVIDER)))
    assert (exc_info.value.current, exc_info.value.requested) == ("CANCELLED", "APPROVED")

    started = machine.create_request(db, actor(client), service.id, 2)
    machine.claim(db, started.id, actor(provider))
    machine.start_work(db, started.id, actor(provider))
    with pytest.raises(InvalidTransition) as exc_info:
        machine.claim(db, started.id, actor(make_user(UserRole.PROVIDER)))
    assert exc_info.value.current == "IN_PROGRESS"


def test_claim_on_assigned_request_is_already_claimed(db, machine, client, provider, admin, make_user, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)
    machine.assign(db, request.id, provider.id, actor(admin))

    with pytest.raises(AlreadyClaimed):
        machine.claim(db, request.id, actor(make_user(UserRole.PROVIDER)))


def test_unassign_returns_request_to_pool(db, machine, client, provider, admin, make_user, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)
    machine.assign(db, request.id, provider.id, actor(admin))

    released = machine.unassign(db, request.id, actor(admin))

    assert released.status == RequestStatus.PENDING
    assert released.provider_id is None
    assert [r.id for r in machine.available_jobs(db)] == [request.id]
    titles = [n.title for n in db.query(Notification).filter(Notification.user_id == provider.id)]
    assert "Request Unassigned" in titles

    with pytest.raises(Forbidden):
        machine.accept(db, request.id, actor(provider))

    other = make_user(UserRole.PROVIDER)
    assert machine.claim(db, request.id, actor(other)).provider_id == other.id


def test_unassign_claimed_request_before_work_starts(db, machine, client, provider, admin, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)
    machine.claim(db, request.id, actor(provider))

    released = machine.unassign(db, request.id, actor(admin))

    assert released.status == RequestStatus.PENDING
    assert released.provider_id is None


def test_unassign_rules(db, machine, client, provider, admin, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)

    with pytest.raises(ValidationFailed):
        machine.unassign(db, request.id, actor(admin))

    machine.claim(db, request.id, actor(provider))
    with pytest.raises(Forbidden):
        machine.unassign(db, request.id, actor(provider))

    machine.start_work(db, request.id, actor(provider))
    with pytest.raises(InvalidTransition):
        machine.unassign(db, request.id, actor(admin))


# ----------------------------------------------------------------------
# Revisions
# ----------------------------------------------------------------------

def test_first_revision_free_second_paid(db, machine, client, provider, service, make_subscription, make_package):
    subscription = make_subscription(client, credits=10, package=make_package(max_free_revisions=1))
    request = delivered_request(db, machine, client, provider, service)
    assert balance(db, subscription) == 6

    first = machine.request_revision(db, request.id, actor(client), "Make it blue")
    assert first.revision.type == "free"
    assert first.request.status == RequestStatus.REVISION_REQUESTED
    assert first.request.current_revision_count == 1
    assert balance(db, subscription) == 6

    machine.resume_work(db, request.id, actor(provider))
    machine.deliver(db, request.id, actor(provider))

    second = machine.request_revision(db, request.id, actor(client), "Now green")
    assert second.revision.type == "paid"
    assert second.revision.cost == 2
    assert second.credits_remaining == 4
    assert balance(db, subscription) == 4

    revised = second.request
    assert revised.revision_credit_cost == 2
    assert revised.credit_cost == 6
    assert revised.total_revisions == 2
    assert revised.revision_type == "paid"
    assert_cost_invariant(revised)

    resumed = machine.resume_work(db, request.id, actor(provider))
    assert resumed.credit_cost == 6
    assert_cost_invariant(resumed)


def test_paid_revision_without_funds_stays_delivered(db, machine, client, provider, service, make_subscription, make_package):
    subscription = make_subscription(client, credits=4, package=make_package(max_free_revisions=1))
    request = delivered_request(db, machine, client, provider, service)
    machine.request_revision(db, request.id, actor(client), "Tweak spacing")
    machine.resume_work(db, request.id, actor(provider))
    machine.deliver(db, request.id, actor(provider))

    with pytest.raises(InsufficientCredits):
        machine.request_revision(db, request.id, actor(client), "One more")

    current = db.get(ServiceRequest, request.id, populate_existing=True)
    assert current.status == RequestStatus.DELIVERED
    assert current.current_revision_count == 1
    assert current.revision_credit_cost == 0
    assert balance(db, subscription) == 0


def test_quote_shows_paid_cost_before_charging(db, machine, client, provider, service, make_subscription, make_package):
    subscription = make_subscription(client, credits=10, package=make_package(max_free_revisions=1))
    request = delivered_request(db, machine, client, provider, service)

    quote = machine.quote_revision(db, request.id, actor(client))
    assert (quote.next_type, quote.next_cost, quote.free_remaining) == ("free", 0, 1)

    machine.request_revision(db, request.id, actor(client), "Adjust")
    quote = machine.quote_revision(db, request.id, actor(client))
    assert (quote.next_type, quote.next_cost, quote.free_remaining) == ("paid", 2, 0)
    assert quote.current_count == 1
    assert balance(db, subscription) == 6


def test_revision_requires_feedback(db, machine, client, provider, service, make_subscription):
    make_subscription(client, credits=5)
    request = delivered_request(db, machine, client, provider, service)
    with pytest.raises(ValidationFailed):
        machine.request_revision(db, request.id, actor(client), "   ")


def test_revision_only_from_delivered(db, machine, client, provider, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)
    with pytest.raises(InvalidTransition):
        machine.request_revision(db, request.id, actor(client), "Too early")


# ----------------------------------------------------------------------
# Cancellation, rating, comments, reads
# ----------------------------------------------------------------------

def test_cancel_refunds_full_cost(db, machine, client, provider, service, make_subscription, make_package):
    subscription = make_subscription(client, credits=10, package=make_package(max_free_revisions=0))
    request = delivered_request(db, machine, client, provider, service)
    machine.request_revision(db, request.id, actor(client), "Paid change")
    assert balance(db, subscription) == 4

    cancelled = machine.cancel(db, request.id, actor(client), reason="Changed my mind")

    assert cancelled.status == RequestStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    assert balance(db, subscription) == 10
    assert db.query(Notification).filter(Notification.user_id == provider.id, Notification.title == "Request Cancelled").count() == 1


def test_cancel_terminal_request_rejected(db, machine, client, provider, service, make_subscription):
    make_subscription(client, credits=5)
    request = delivered_request(db, machine, client, provider, service)
    machine.approve(db, request.id, actor(client))

    with pytest.raises(InvalidTransition):
        machine.cancel(db, request.id, actor(client))


def test_cancel_by_other_client_forbidden(db, machine, client, make_user, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)
    with pytest.raises(Forbidden):
        machine.cancel(db, request.id, actor(make_user(UserRole.CLIENT)))


def test_admin_cancel_refunds_to_current_subscription(db, machine, client, admin, service, make_subscription):
    old = make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)
    old.is_active = False
    db.commit()
    new = make_subscription(client, credits=1)

    machine.cancel(db, request.id, actor(admin))

    assert balance(db, new) == 5
    assert balance(db, old) == 1


def test_rate_completed_request_once(db, machine, client, provider, service, make_subscription):
    make_subscription(client, credits=5)
    request = delivered_request(db, machine, client, provider, service)

    with pytest.raises(InvalidTransition):
        machine.rate(db, request.id, actor(client), 5)

    machine.approve(db, request.id, actor(client))
    with pytest.raises(ValidationFailed):
        machine.rate(db, request.id, actor(client), 6)

    rating = machine.rate(db, request.id, actor(client), 5, "Great work")
    assert rating.provider_id == provider.id

    with pytest.raises(AlreadyRated):
        machine.rate(db, request.id, actor(client), 4)


def test_comment_notifies_other_party(db, machine, client, provider, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)
    machine.claim(db, request.id, actor(provider))

    comment = machine.add_comment(db, request.id, actor(provider), "Which font?")

    assert comment.type == CommentType.MESSAGE
    latest = (
        db.query(Notification)
        .filter(Notification.user_id == client.id)
        .order_by(Notification.id.desc())
        .first()
    )
    assert latest.type == "message"


def test_access_rules(db, machine, client, provider, make_user, service, make_subscription):
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)
    other_provider = make_user(UserRole.PROVIDER)

    # open pool is visible to every provider
    assert machine.get_request(db, request.id, actor(other_provider)).id == request.id

    machine.claim(db, request.id, actor(provider))
    with pytest.raises(Forbidden):
        machine.get_request(db, request.id, actor(other_provider))
    with pytest.raises(Forbidden):
        machine.get_request(db, request.id, actor(make_user(UserRole.CLIENT)))
    with pytest.raises(NotFound):
        machine.get_request(db, 999, actor(client))


def test_list_requests_by_role(db, machine, client, provider, service, make_subscription):
    make_subscription(client, credits=20)
    first = machine.create_request(db, actor(client), service.id, 1)
    second = machine.create_request(db, actor(client), service.id, 1)
    machine.claim(db, first.id, actor(provider))

    mine, _ = machine.list_requests(db, actor(client))
    assert [r.id for r in mine] == [second.id, first.id]

    assigned, _ = machine.list_requests(db, actor(provider))
    assert [r.id for r in assigned] == [first.id]

    page, cursor = machine.list_requests(db, actor(client), limit=1)
    assert [r.id for r in page] == [second.id]
    assert cursor == second.id

    pending, _ = machine.list_requests(db, actor(client), status=RequestStatus.PENDING)
    assert [r.id for r in pending] == [second.id]

    assert [r.id for r in machine.available_jobs(db)] == [second.id]


def test_push_failure_does_not_fail_transition(db, client, provider, service, make_subscription):
    registry = Mock(spec=RealtimeRegistry)
    registry.send.side_effect = RuntimeError("socket closed")
    machine = RequestStateMachine(CreditLedger(), NotificationDispatcher(registry=registry))
    make_subscription(client, credits=5)
    request = machine.create_request(db, actor(client), service.id, 2)

    claimed = machine.claim(db, request.id, actor(provider))

    assert claimed.status == RequestStatus.APPROVED
    assert db.query(Notification).filter(Notification.user_id == client.id).count() == 1


# ----------------------------------------------------------------------
# Concurrency
# ----------------------------------------------------------------------

def test_concurrent_claims_have_one_winner(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'claims.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    setup = Session()
    client = User(full_name="Client", email="client@example.com", role=UserRole.CLIENT)
    providers = [
        User(full_name=f"Provider {i}", email=f"p{i}@example.com", role=UserRole.PROVIDER)
        for i in range(2)
    ]
    package = Package(name="Pro", credits=10, duration_days=30)
    service = ServiceType(name="Logo", base_credit_cost=3)
    setup.add_all([client, package, service, *providers])
    setup.commit()
    now = utcnow()
    setup.add(ClientSubscription(
        user_id=client.id, package_id=package.id, remaining_credits=10,
        start_date=now, end_date=now + timedelta(days=30), is_active=True,
    ))
    setup.commit()

    machine = RequestStateMachine(CreditLedger(), NotificationDispatcher())
    request = machine.create_request(setup, CurrentUser(client.id, UserRole.CLIENT), service.id, 2)
    request_id = request.id
    provider_ids = [p.id for p in providers]
    setup.close()

    barrier = threading.Barrier(2)
    outcomes = {}

    def claim(provider_id):
        session = Session()
        try:
            barrier.wait()
            machine.claim(session, request_id, CurrentUser(provider_id, UserRole.PROVIDER))
            outcomes[provider_id] = "won"
        except AlreadyClaimed:
            outcomes[provider_id] = "already_claimed"
        finally:
            session.close()

    threads = [threading.Thread(target=claim, args=(pid,)) for pid in provider_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    check = Session()
    stored = check.get(ServiceRequest, request_id)
    winner = [pid for pid, outcome in outcomes.items() if outcome == "won"]
    assert sorted(outcomes.values()) == ["already_claimed", "won"]
    assert stored.provider_id == winner[0]
    assert stored.status == RequestStatus.APPROVED
    check.close()
    engine.dispose()

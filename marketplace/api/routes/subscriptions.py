"""
Subscription and credit balance endpoints.

Payment capture happens upstream; ``purchase`` is called once the package has been paid for.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from marketplace.api.deps import get_dispatcher, get_ledger
from marketplace.core.auth_dependency import CurrentUser, get_current_user, get_db, require_roles
from marketplace.db.models.user import UserRole
from marketplace.schemas.subscription import BalanceResponse, PurchaseRequest, SubscriptionOut
from marketplace.services.ledger_service import CreditLedger
from marketplace.services.notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


@router.get("/active", response_model=Optional[SubscriptionOut])
def get_active_subscription(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
):
    return ledger.get_active(db, user.user_id)


@router.get("/balance", response_model=BalanceResponse)
def get_balance(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
):
    balance = ledger.get_balance(db, user.user_id)
    is_expiring, days_remaining = ledger.check_expiry(db, user.user_id)
    return BalanceResponse(
        balance=balance.balance,
        package_name=balance.package_name,
        end_date=balance.end_date,
        is_expiring=is_expiring,
        days_remaining=days_remaining,
    )


@router.post("/purchase", response_model=SubscriptionOut, status_code=status.HTTP_201_CREATED)
def purchase(
    payload: PurchaseRequest,
    user: CurrentUser = Depends(require_roles(UserRole.CLIENT)),
    db: Session = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Returns 409 while another subscription is active."""
    return ledger.purchase_package(db, user.user_id, payload.package_id)


@router.post("/grant-free", response_model=SubscriptionOut)
def grant_free(
    user: CurrentUser = Depends(require_roles(UserRole.CLIENT)),
    db: Session = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Registration grant of the free package. No-op when a subscription is already active."""
    return ledger.grant_free_package(db, user.user_id)


@router.post("/cancel", response_model=SubscriptionOut)
def cancel(
    user: CurrentUser = Depends(require_roles(UserRole.CLIENT)),
    db: Session = Depends(get_db),
    ledger: CreditLedger = Depends(get_ledger),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    active = ledger.get_active(db, user.user_id)
    if not active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active subscription found")

    subscription = ledger.cancel_subscription(db, active.id, user_id=user.user_id)
    dispatcher.notify(
        db,
        user.user_id,
        "Subscription Cancelled",
        "Your subscription has been cancelled. Remaining credits are no longer available.",
        link="/client/subscription",
    )
    return subscription

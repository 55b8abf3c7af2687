"""
Credit ledger for client subscriptions.

Owns ``ClientSubscription.remaining_credits``. Every balance change is a single
conditional UPDATE whose matched row count is the success signal, so concurrent
debits against one subscription can never spend more than the available balance.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from marketplace.core import config
from marketplace.core.clock import utcnow
from marketplace.core.errors import InsufficientCredits, NotFound, SubscriptionConflict
from marketplace.db.models.package import Package
from marketplace.db.models.subscription import ClientSubscription
from marketplace.db.models.user import User
from marketplace.services.cache_invalidation import CacheInvalidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerResult:
    subscription_id: int
    user_id: int
    amount: int
    balance: int


@dataclass(frozen=True)
class CreditBalance:
    balance: int
    package_name: Optional[str]
    end_date: Optional[datetime]


class CreditLedger:
    def __init__(self, cache: Optional[CacheInvalidator] = None):
        self.cache = cache or CacheInvalidator(None)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_active(self, db: Session, user_id: int, now: Optional[datetime] = None) -> Optional[ClientSubscription]:
        """Return the user's subscription with ``is_active`` set and an end date not yet passed."""
        now = now or utcnow()
        return (
            db.query(ClientSubscription)
            .filter(
                ClientSubscription.user_id == user_id,
                ClientSubscription.is_active.is_(True),
                ClientSubscription.end_date >= now,
            )
            .order_by(ClientSubscription.created_at.desc(), ClientSubscription.id.desc())
            .first()
        )

    def get_balance(self, db: Session, user_id: int) -> CreditBalance:
        subscription = self.get_active(db, user_id)
        if not subscription:
            return CreditBalance(balance=0, package_name=None, end_date=None)
        return CreditBalance(
            balance=subscription.remaining_credits,
            package_name=subscription.package.name if subscription.package else None,
            end_date=subscription.end_date,
        )

    def check_expiry(self, db: Session, user_id: int, now: Optional[datetime] = None) -> Tuple[bool, int]:
        """
        Return ``(is_expiring, days_remaining)`` for the user's active subscription.

        A user without a subscription is reported as expiring with zero days left.
        """
        now = now or utcnow()
        subscription = (
            db.query(ClientSubscription)
            .filter(ClientSubscription.user_id == user_id, ClientSubscription.is_active.is_(True))
            .order_by(ClientSubscription.created_at.desc())
            .first()
        )
        if not subscription:
            return True, 0

        days_remaining = days_until(subscription.end_date, now)
        return days_remaining <= config.EXPIRY_NOTICE_DAYS, max(0, days_remaining)

    # ------------------------------------------------------------------
    # Balance mutations
    # ------------------------------------------------------------------

    def debit(
        self,
        db: Session,
        subscription_id: int,
        amount: int,
        reason: Optional[str] = None,
        commit: bool = True,
    ) -> LedgerResult:
        """
        Spend ``amount`` credits from an active subscription.

        Raises:
            InsufficientCredits: balance is lower than ``amount`` (balance unchanged)
            NotFound: subscription missing, inactive or past its end date
        """
        if amount <= 0:
            raise ValueError("Debit amount must be positive")

        now = utcnow()
        matched = (
            db.query(ClientSubscription)
            .filter(
                ClientSubscription.id == subscription_id,
                ClientSubscription.is_active.is_(True),
                ClientSubscription.end_date >= now,
                ClientSubscription.remaining_credits >= amount,
            )
            .update(
                {ClientSubscription.remaining_credits: ClientSubscription.remaining_credits - amount},
                synchronize_session=False,
            )
        )

        subscription = db.get(ClientSubscription, subscription_id, populate_existing=True)
        if not matched:
            if commit:
                db.rollback()
            if subscription is None or not subscription.is_active or subscription.end_date < now:
                raise NotFound("Active subscription", subscription_id)
            logger.warning(
                f"Debit refused: subscription_id={subscription_id}, amount={amount}, "
                f"balance={subscription.remaining_credits}"
            )
            raise InsufficientCredits(required=amount, available=subscription.remaining_credits)

        result = LedgerResult(
            subscription_id=subscription_id,
            user_id=subscription.user_id,
            amount=amount,
            balance=subscription.remaining_credits,
        )
        if commit:
            db.commit()
            self.cache.invalidate_subscription(result.user_id)

        logger.info(
            f"Credits debited: subscription_id={subscription_id}, amount={amount}, "
            f"balance={result.balance}, reason={reason or 'N/A'}"
        )
        return result

    def credit(
        self,
        db: Session,
        subscription_id: int,
        amount: int,
        reason: Optional[str] = None,
        commit: bool = True,
    ) -> LedgerResult:
        """Add ``amount`` credits back (refunds, bonuses). Never expressed as a negative debit."""
        if amount <= 0:
            raise ValueError("Credit amount must be positive")

        matched = (
            db.query(ClientSubscription)
            .filter(ClientSubscription.id == subscription_id)
            .update(
                {ClientSubscription.remaining_credits: ClientSubscription.remaining_credits + amount},
                synchronize_session=False,
            )
        )
        if not matched:
            raise NotFound("Subscription", subscription_id)

        subscription = db.get(ClientSubscription, subscription_id, populate_existing=True)
        result = LedgerResult(
            subscription_id=subscription_id,
            user_id=subscription.user_id,
            amount=amount,
            balance=subscription.remaining_credits,
        )
        if commit:
            db.commit()
            self.cache.invalidate_subscription(result.user_id)

        logger.info(
            f"Credits added: subscription_id={subscription_id}, amount={amount}, "
            f"balance={result.balance}, reason={reason or 'N/A'}"
        )
        return result

    # ------------------------------------------------------------------
    # Subscription lifecycle
    # ------------------------------------------------------------------

    def purchase_package(
        self,
        db: Session,
        user_id: int,
        package_id: int,
        now: Optional[datetime] = None,
    ) -> ClientSubscription:
        """
        Open a subscription for ``package_id`` with the package's credits and duration.

        Raises:
            SubscriptionConflict: the user already holds an active subscription
            NotFound: user unknown, or package missing or inactive
        """
        now = now or utcnow()
        try:
            # Row lock on the user serialises concurrent purchases until this transaction ends
            user = db.query(User).filter(User.id == user_id).with_for_update().first()
            if not user:
                raise NotFound("User", user_id)

            if self.get_active(db, user_id, now):
                raise SubscriptionConflict(
                    "You already have an active subscription. "
                    "Please cancel it first or wait for it to expire."
                )

            package = (
                db.query(Package)
                .filter(Package.id == package_id, Package.is_active.is_(True))
                .first()
            )
            if not package:
                raise NotFound("Package", package_id)

            subscription = ClientSubscription(
                user_id=user_id,
                package_id=package.id,
                remaining_credits=package.credits,
                start_date=now,
                end_date=now + timedelta(days=package.duration_days),
                is_active=True,
                created_at=now,
            )
            db.add(subscription)
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(subscription)
        self.cache.invalidate_subscription(user_id)

        logger.info(
            f"Subscription opened: user_id={user_id}, package={package.name}, "
            f"credits={package.credits}, end_date={subscription.end_date.isoformat()}"
        )
        return subscription

    def grant_free_package(self, db: Session, user_id: int) -> ClientSubscription:
        """Registration grant: give the user the free package unless they already hold a subscription."""
        existing = self.get_active(db, user_id)
        if existing:
            return existing

        package = (
            db.query(Package)
            .filter(Package.is_free.is_(True), Package.is_active.is_(True))
            .order_by(Package.id)
            .first()
        )
        if not package:
            raise NotFound(f"{config.FREE_PACKAGE_NAME} package")
        return self.purchase_package(db, user_id, package.id)

    def cancel_subscription(self, db: Session, subscription_id: int, user_id: Optional[int] = None) -> ClientSubscription:
        """Soft-cancel: ``is_active`` cleared and ``cancelled_at`` stamped. The row is kept."""
        query = db.query(ClientSubscription).filter(
            ClientSubscription.id == subscription_id,
            ClientSubscription.is_active.is_(True),
        )
        if user_id is not None:
            query = query.filter(ClientSubscription.user_id == user_id)

        matched = query.update(
            {ClientSubscription.is_active: False, ClientSubscription.cancelled_at: utcnow()},
            synchronize_session=False,
        )
        if not matched:
            raise NotFound("Active subscription", subscription_id)

        db.commit()
        subscription = db.get(ClientSubscription, subscription_id, populate_existing=True)
        self.cache.invalidate_subscription(subscription.user_id)
        logger.info(f"Subscription cancelled: subscription_id={subscription_id}")
        return subscription

    def deactivate_if_active(self, db: Session, subscription_id: int) -> bool:
        """Clear ``is_active`` on a lapsed subscription. Returns False when it was already inactive."""
        matched = (
            db.query(ClientSubscription)
            .filter(ClientSubscription.id == subscription_id, ClientSubscription.is_active.is_(True))
            .update({ClientSubscription.is_active: False}, synchronize_session=False)
        )
        db.commit()
        if matched:
            subscription = db.get(ClientSubscription, subscription_id, populate_existing=True)
            self.cache.invalidate_subscription(subscription.user_id)
        return bool(matched)


def days_until(end_date: datetime, now: datetime) -> int:
    """Whole days remaining, rounded up."""
    return math.ceil((end_date - now).total_seconds() / 86400)

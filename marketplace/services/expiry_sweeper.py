"""
Daily subscription expiry sweep.

Called by an external scheduler (``POST /cron/check-subscriptions`` or
``scripts/run_expiry_sweep.py``). Safe to re-run: notifications are deduplicated by
title over the last ``NOTIFICATION_DEDUPE_DAYS`` and deactivation is a conditional
update that only counts rows it actually flipped.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from marketplace.core import config
from marketplace.core.clock import utcnow
from marketplace.db.models.subscription import ClientSubscription
from marketplace.services.ledger_service import CreditLedger, days_until
from marketplace.services.notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)

EXPIRING_TITLE = "Subscription Expiring Soon"
EXPIRED_TITLE = "Subscription Expired"


@dataclass
class SweepResult:
    expiring_notified: int = 0
    expired_notified: int = 0
    expired_deactivated: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def summary(self) -> str:
        return (
            f"Checked subscriptions: {self.expiring_notified} expiring notifications sent, "
            f"{self.expired_notified} expired notifications sent, "
            f"{self.expired_deactivated} subscriptions deactivated."
        )


class ExpirySweeper:
    def __init__(self, ledger: CreditLedger, dispatcher: NotificationDispatcher):
        self.ledger = ledger
        self.dispatcher = dispatcher

    def run(self, db: Session, now: Optional[datetime] = None) -> SweepResult:
        now = now or utcnow()
        result = SweepResult()

        logger.info(f"Expiry sweep started at {now.isoformat()}")
        self._notify_expiring(db, now, result)
        self._expire_lapsed(db, now, result)

        if result.errors:
            logger.warning(f"Expiry sweep finished with {len(result.errors)} error(s)")
        logger.info(result.summary)
        return result

    def _notify_expiring(self, db: Session, now: datetime, result: SweepResult) -> None:
        horizon = now + timedelta(days=config.EXPIRY_NOTICE_DAYS)
        since = now - timedelta(days=config.NOTIFICATION_DEDUPE_DAYS)

        subscriptions = (
            db.query(ClientSubscription)
            .filter(
                ClientSubscription.is_active.is_(True),
                ClientSubscription.end_date >= now,
                ClientSubscription.end_date <= horizon,
            )
            .order_by(ClientSubscription.id)
            .all()
        )

        for subscription in subscriptions:
            try:
                days_remaining = days_until(subscription.end_date, now)
                # Exactly N days out; anything closer was announced on an earlier run
                if days_remaining != config.EXPIRY_NOTICE_DAYS:
                    continue

                if self.dispatcher.has_recent(db, subscription.user_id, EXPIRING_TITLE, since):
                    continue

                package_name = subscription.package.name if subscription.package else "subscription"
                self.dispatcher.notify(
                    db,
                    subscription.user_id,
                    EXPIRING_TITLE,
                    f"Your {package_name} package expires in {days_remaining} days. "
                    f"You have {subscription.remaining_credits} credits left.",
                    link="/client/subscription",
                    type="general",
                    now=now,
                )
                result.expiring_notified += 1
            except Exception as e:
                db.rollback()
                logger.error(f"Failed to notify user {subscription.user_id}: {e}")
                result.errors.append(f"User {subscription.user_id}: {e}")

    def _expire_lapsed(self, db: Session, now: datetime, result: SweepResult) -> None:
        since = now - timedelta(days=config.NOTIFICATION_DEDUPE_DAYS)

        subscriptions = (
            db.query(ClientSubscription)
            .filter(
                ClientSubscription.is_active.is_(True),
                ClientSubscription.end_date < now,
            )
            .order_by(ClientSubscription.id)
            .all()
        )

        for subscription in subscriptions:
            subscription_id = subscription.id
            user_id = subscription.user_id
            try:
                if not self.dispatcher.has_recent(db, user_id, EXPIRED_TITLE, since):
                    package_name = subscription.package.name if subscription.package else "subscription"
                    self.dispatcher.notify(
                        db,
                        user_id,
                        EXPIRED_TITLE,
                        f"Your {package_name} package has expired. "
                        "Purchase a new package to keep submitting requests.",
                        link="/client/subscription",
                        type="general",
                        now=now,
                    )
                    result.expired_notified += 1
            except Exception as e:
                db.rollback()
                logger.error(f"Failed to notify expiry for subscription {subscription_id}: {e}")
                result.errors.append(f"Subscription {subscription_id}: {e}")

            # A failed notification must not keep the subscription active
            try:
                if self.ledger.deactivate_if_active(db, subscription_id):
                    result.expired_deactivated += 1
                    logger.info(f"Subscription deactivated: subscription_id={subscription_id}, user_id={user_id}")
            except Exception as e:
                db.rollback()
                logger.error(f"Failed to deactivate subscription {subscription_id}: {e}")
                result.errors.append(f"Subscription {subscription_id}: {e}")

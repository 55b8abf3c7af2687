"""
Run the subscription expiry sweep once (for cron / systemd timers).
Run: python -m scripts.run_expiry_sweep

Notifications are stored only; live pushes need the API process, which
clients pick up on their next unread-count poll.
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging

from marketplace.core import config
from marketplace.core.logging_config import setup_logging
from marketplace.db.session import SessionLocal
from marketplace.services.cache_invalidation import CacheInvalidator
from marketplace.services.expiry_sweeper import ExpirySweeper
from marketplace.services.ledger_service import CreditLedger
from marketplace.services.notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)


def run_sweep() -> bool:
    cache = CacheInvalidator.from_url(config.REDIS_URL)
    sweeper = ExpirySweeper(CreditLedger(cache=cache), NotificationDispatcher(cache=cache))

    db = SessionLocal()
    try:
        result = sweeper.run(db)
        for error in result.errors:
            logger.error(f"Sweep error: {error}")
        return not result.errors
    except Exception as e:
        db.rollback()
        logger.error(f"Expiry sweep failed: {e}", exc_info=True)
        return False
    finally:
        db.close()


if __name__ == "__main__":
    setup_logging(config.LOG_LEVEL, config.LOG_DIR)
    success = run_sweep()

    if success:
        print("\n[SUCCESS] Expiry sweep finished")
    else:
        print("\n[ERROR] Expiry sweep finished with errors, see logs/marketplace.log")
        sys.exit(1)

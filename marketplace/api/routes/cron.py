"""
Scheduled job trigger.

Meant to be called once a day by an external scheduler. When ``CRON_SECRET`` is
set the caller must send ``Authorization: Bearer <CRON_SECRET>``.
"""
import hmac
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from marketplace.api.deps import get_sweeper
from marketplace.core import config
from marketplace.core.auth_dependency import get_db
from marketplace.core.clock import utcnow
from marketplace.schemas.sweep import SweepResponse, SweepResults
from marketplace.services.expiry_sweeper import ExpirySweeper

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"])


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    secret = config.CRON_SECRET
    if not secret:
        return
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        logger.warning("Rejected cron call with missing or invalid secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post("/check-subscriptions", response_model=SweepResponse, dependencies=[Depends(verify_cron_secret)])
def check_subscriptions(
    db: Session = Depends(get_db),
    sweeper: ExpirySweeper = Depends(get_sweeper),
):
    now = utcnow()
    result = sweeper.run(db, now=now)
    return SweepResponse(
        success=True,
        timestamp=now,
        results=SweepResults(
            expiring_notified=result.expiring_notified,
            expired_notified=result.expired_notified,
            expired_deactivated=result.expired_deactivated,
            errors=result.errors,
        ),
        message=result.summary,
    )

from datetime import datetime
from typing import List
from pydantic import BaseModel, Field


class SweepResults(BaseModel):
    expiring_notified: int
    expired_notified: int
    expired_deactivated: int
    errors: List[str] = Field(default_factory=list)


class SweepResponse(BaseModel):
    """Response schema for POST /cron/check-subscriptions."""
    success: bool = True
    timestamp: datetime
    results: SweepResults
    message: str

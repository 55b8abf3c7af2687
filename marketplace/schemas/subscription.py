"""
Pydantic schemas for subscription and credit endpoints.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class PurchaseRequest(BaseModel):
    package_id: int


class SubscriptionOut(BaseModel):
    id: int
    user_id: int
    package_id: int
    remaining_credits: int
    start_date: datetime
    end_date: datetime
    is_active: bool
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BalanceResponse(BaseModel):
    """Response schema for GET /subscriptions/balance."""
    balance: int = Field(..., description="Remaining credits on the active subscription")
    package_name: Optional[str] = Field(None, description="None when the user has no active subscription")
    end_date: Optional[datetime] = None
    is_expiring: bool = Field(..., description="True within the expiry notice window")
    days_remaining: int

    class Config:
        json_schema_extra = {
            "example": {
                "balance": 12,
                "package_name": "Pro",
                "end_date": "2026-02-01T00:00:00",
                "is_expiring": False,
                "days_remaining": 18,
            }
        }

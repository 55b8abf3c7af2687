"""
Pydantic schemas for request lifecycle endpoints.
"""
from datetime import datetime
from typing import Any, List, Optional
from pydantic import BaseModel, Field

from marketplace.db.models.request import RequestStatus


class AttributeResponse(BaseModel):
    question: str
    answer: Any = None


class RequestCreate(BaseModel):
    """Body of POST /requests."""
    service_type_id: int = Field(..., description="Service being ordered")
    priority: int = Field(2, description="1 (low), 2 (medium) or 3 (high)")
    title: Optional[str] = Field(None, description="Defaults to the service name")
    description: Optional[str] = None
    attribute_responses: List[AttributeResponse] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "service_type_id": 3,
                "priority": 2,
                "title": "Logo refresh",
                "description": "Modernize our current logo",
                "attribute_responses": [
                    {"question": "Preferred style", "answer": "Minimal"},
                    {"question": "Number of concepts", "answer": 2},
                ],
            }
        }


class AssignRequest(BaseModel):
    provider_id: int


class StartWorkRequest(BaseModel):
    estimated_days: Optional[int] = Field(None, ge=1, description="Days until expected delivery")


class DeliverRequest(BaseModel):
    message: Optional[str] = Field(None, description="Delivery note shown to the client")


class RevisionCreate(BaseModel):
    feedback: str = Field(..., min_length=1, description="What needs to change")


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RatingCreate(BaseModel):
    rating: int = Field(..., description="1..5")
    review_text: Optional[str] = None


class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1)


class CommentOut(BaseModel):
    id: int
    request_id: int
    user_id: int
    content: str
    type: str
    created_at: datetime

    class Config:
        from_attributes = True


class CostBreakdownOut(BaseModel):
    base: int
    priority: int
    revision_total: int
    unit_cost: int
    revision_multiplier: Optional[int] = Field(None, description="Set only when revision_total == unit_cost * multiplier")
    total: int
    display: str


class RequestOut(BaseModel):
    id: int
    client_id: int
    provider_id: Optional[int] = None
    service_type_id: int
    subscription_id: int
    title: str
    description: Optional[str] = None
    status: RequestStatus
    priority: int
    credit_cost: int
    base_credit_cost: int
    priority_credit_cost: int
    revision_credit_cost: int
    current_revision_count: int
    total_revisions: int
    is_revision: bool
    revision_type: Optional[str] = None
    attribute_responses: List[Any] = Field(default_factory=list)
    estimated_delivery: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RequestDetail(RequestOut):
    cost_breakdown: CostBreakdownOut
    comments: List[CommentOut] = Field(default_factory=list)


class RequestPage(BaseModel):
    requests: List[RequestOut]
    next_cursor: Optional[int] = None


class RevisionQuoteOut(BaseModel):
    """Shown to the client before a revision is charged."""
    current_count: int = Field(..., description="Revisions requested so far")
    max_free: int = Field(..., description="Free revisions included in the package")
    total_revisions: int
    next_cost: int = Field(..., description="Credits the next revision will debit")
    next_type: str = Field(..., description="free or paid")
    free_remaining: int

    class Config:
        json_schema_extra = {
            "example": {
                "current_count": 1,
                "max_free": 1,
                "total_revisions": 1,
                "next_cost": 2,
                "next_type": "paid",
                "free_remaining": 0,
            }
        }


class RevisionResult(BaseModel):
    request: RequestOut
    revision_type: str
    revision_cost: int
    credits_remaining: Optional[int] = None


class RatingOut(BaseModel):
    id: int
    request_id: int
    client_id: int
    provider_id: int
    rating: int
    review_text: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True

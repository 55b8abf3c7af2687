"""
Business error taxonomy for the ledger, the request lifecycle and notifications.

Ledger and state machine errors propagate to the caller untouched; the API layer
maps them to HTTP responses via ``MarketplaceError.http_status``.
"""
from typing import Any, Dict, List, Optional


class MarketplaceError(Exception):
    """Base class for every business rule violation raised by the core."""

    code = "marketplace_error"
    http_status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class InvalidPriority(MarketplaceError):
    code = "invalid_priority"
    http_status = 422

    def __init__(self, priority: Any):
        super().__init__(f"Priority must be 1 (low), 2 (medium) or 3 (high), got {priority!r}")
        self.priority = priority


class InsufficientCredits(MarketplaceError):
    code = "insufficient_credits"
    http_status = 402

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient credits. You have {available} credits but need {required}."
        )
        self.required = required
        self.available = available

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update({"required": self.required, "available": self.available})
        return detail


class InvalidTransition(MarketplaceError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move request from {current} to {requested}")
        self.current = current
        self.requested = requested

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail.update({"current": self.current, "requested": self.requested})
        return detail


class AlreadyClaimed(MarketplaceError):
    code = "already_claimed"
    http_status = 409

    def __init__(self, request_id: int):
        super().__init__("This request has already been claimed by another provider")
        self.request_id = request_id


class ValidationFailed(MarketplaceError):
    code = "validation_failed"
    http_status = 422

    def __init__(self, errors: List[str]):
        super().__init__(f"Validation failed: {'; '.join(errors)}")
        self.errors = errors

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["errors"] = self.errors
        return detail


class NotFound(MarketplaceError):
    code = "not_found"
    http_status = 404

    def __init__(self, entity: str, entity_id: Optional[Any] = None):
        message = f"{entity} not found" if entity_id is None else f"{entity} {entity_id} not found"
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id


class Forbidden(MarketplaceError):
    code = "forbidden"
    http_status = 403


class SubscriptionConflict(MarketplaceError):
    code = "subscription_conflict"
    http_status = 409


class TransportUnavailable(MarketplaceError):
    """Realtime push could not be attempted. Never fatal to the caller."""

    code = "transport_unavailable"
    http_status = 503


class AlreadyRated(MarketplaceError):
    code = "already_rated"
    http_status = 409

    def __init__(self, request_id: int):
        super().__init__("This request has already been rated")
        self.request_id = request_id

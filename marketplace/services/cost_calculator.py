"""
Credit cost calculation for requests and revisions.

Pure functions: nothing here touches the database. Priority surcharges come from
the per-service columns on ServiceType; there is no global priority setting.
"""
from dataclasses import dataclass
from typing import Optional

from marketplace.core.errors import InvalidPriority

PRIORITY_LOW = 1
PRIORITY_MEDIUM = 2
PRIORITY_HIGH = 3

PRIORITY_NAMES = {
    PRIORITY_LOW: "low",
    PRIORITY_MEDIUM: "medium",
    PRIORITY_HIGH: "high",
}

REVISION_FREE = "free"
REVISION_PAID = "paid"


@dataclass(frozen=True)
class PriorityCostTable:
    """Per-service surcharge for each priority tier."""
    low: int = 0
    medium: int = 1
    high: int = 2

    def __post_init__(self):
        for tier in ("low", "medium", "high"):
            if getattr(self, tier) < 0:
                raise ValueError(f"Priority surcharge '{tier}' must be non-negative")

    @classmethod
    def from_service_type(cls, service_type) -> "PriorityCostTable":
        """Build the table from a ServiceType row, falling back to defaults for unset columns."""
        defaults = cls()
        return cls(
            low=_or_default(service_type.priority_cost_low, defaults.low),
            medium=_or_default(service_type.priority_cost_medium, defaults.medium),
            high=_or_default(service_type.priority_cost_high, defaults.high),
        )

    def for_priority(self, priority: int) -> int:
        validate_priority(priority)
        return getattr(self, PRIORITY_NAMES[priority])


@dataclass(frozen=True)
class RevisionCost:
    cost: int
    type: str  # "free" | "paid"

    @property
    def is_free(self) -> bool:
        return self.type == REVISION_FREE


@dataclass(frozen=True)
class CostBreakdown:
    base: int
    priority: int
    revision_total: int
    unit_cost: int
    revision_multiplier: Optional[int]
    total: int

    @property
    def display(self) -> str:
        parts = [str(self.base), str(self.priority)]
        if self.revision_total:
            if self.revision_multiplier is not None:
                parts.append(f"{self.unit_cost}×{self.revision_multiplier}")
            else:
                parts.append(str(self.revision_total))
        return f"{' + '.join(parts)} = {self.total}"


def _or_default(value: Optional[int], default: int) -> int:
    return default if value is None else value


def validate_priority(priority) -> int:
    # bool is an int subclass and 2.0 == 2; only real ints are accepted
    if isinstance(priority, bool) or not isinstance(priority, int) or priority not in PRIORITY_NAMES:
        raise InvalidPriority(priority)
    return priority


def compute_creating_cost(base_cost: int, priority: int, priority_table: PriorityCostTable) -> int:
    """Credits charged when a request is opened: base cost plus the priority surcharge."""
    if base_cost < 0:
        raise ValueError("Base credit cost must be non-negative")
    return base_cost + priority_table.for_priority(priority)


def compute_revision_cost(
    request,
    priority_table: PriorityCostTable,
    free_revisions_allowed: int,
    paid_revision_unit_cost: int,
) -> RevisionCost:
    """
    Classify the next revision on ``request``.

    The revision is free while ``current_revision_count < free_revisions_allowed``;
    after that every revision costs ``paid_revision_unit_cost`` credits. The counter is
    never reset, so the k-th revision is free iff k <= free_revisions_allowed.

    ``priority_table`` is accepted so callers hand over the full pricing context; the
    priority surcharge is charged once at creation and does not apply to revisions.
    """
    if paid_revision_unit_cost < 0:
        raise ValueError("Paid revision cost must be non-negative")

    if request.current_revision_count < max(0, free_revisions_allowed):
        return RevisionCost(cost=0, type=REVISION_FREE)
    return RevisionCost(cost=paid_revision_unit_cost, type=REVISION_PAID)


def build_cost_breakdown(
    base: int,
    priority: int,
    revision_total: int,
    unit_cost: int,
) -> CostBreakdown:
    """
    Reconstruct the displayed cost of a request.

    A ``unit×count`` multiplier is only claimed when it reproduces the stored paid
    revision total exactly. Requests priced before a unit cost change fall back to
    showing the raw revision figure.
    """
    multiplier = None
    if unit_cost > 0 and revision_total % unit_cost == 0:
        multiplier = revision_total // unit_cost

    return CostBreakdown(
        base=base,
        priority=priority,
        revision_total=revision_total,
        unit_cost=unit_cost,
        revision_multiplier=multiplier,
        total=base + priority + revision_total,
    )


def breakdown_for_request(request) -> CostBreakdown:
    unit_cost = request.service_type.paid_revision_cost if request.service_type else 0
    return build_cost_breakdown(
        base=request.base_credit_cost,
        priority=request.priority_credit_cost,
        revision_total=request.revision_credit_cost,
        unit_cost=unit_cost or 0,
    )

"""
Engine error taxonomy.

Every mutating operation raises one of these synchronously; the surrounding
transaction is rolled back, so a caller never observes partial state.
"""

from typing import Any, Optional


class ReconciliationError(Exception):
    """Base exception for all reconciliation engine errors."""
    pass


class ValidationError(ReconciliationError):
    """Malformed input: missing ids, non-positive amounts, unknown amount types."""

    def __init__(self, field: str, value: Any, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field}={value!r}: {reason}")


class ConflictError(ReconciliationError):
    """An allocation already exists for this (fund, deal) pair."""

    def __init__(self, fund_id: int, deal_id: int, existing_allocation_id: Optional[int] = None):
        self.fund_id = fund_id
        self.deal_id = deal_id
        self.existing_allocation_id = existing_allocation_id
        msg = f"Fund {fund_id} already has an allocation to deal {deal_id}"
        if existing_allocation_id is not None:
            msg += f" (allocation {existing_allocation_id})"
        super().__init__(msg)


class InvariantViolation(ReconciliationError):
    """The requested change would break a capital-call invariant."""

    def __init__(self, invariant: str, detail: str, **context):
        self.invariant = invariant
        self.detail = detail
        self.context = context
        super().__init__(f"{invariant}: {detail}")


class NotFoundError(ReconciliationError):
    """Referenced fund, deal, allocation or capital call does not exist."""

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")

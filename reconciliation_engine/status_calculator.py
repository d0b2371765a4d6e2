"""
Status Calculator

The single place allocation and capital-call statuses are derived. Every
caller (engine, sweep, validator, maintenance scripts) goes through these
functions; none of them re-encodes the rules.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from Shared_Utils.enum import AllocationStatus, CapitalCallStatus

ZERO = Decimal('0')


def _as_decimal(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def calculate_allocation_status(amount, called_amount, paid_amount) -> AllocationStatus:
    """
    Derive an allocation's status from its commitment and call totals.

    Rules, first match wins:
        amount == 0               -> unfunded
        called == 0               -> committed
        paid == 0                 -> called_unpaid
        paid < called             -> partially_paid
        paid >= called            -> funded

    Paid above called is clamped to called, so an overpaid allocation reads as
    funded; the excess itself is reported by the repair sweep.

    written_off is never returned. It is an administrative override the
    synchronizer checks before calling this.
    """
    amount = _as_decimal(amount)
    called = _as_decimal(called_amount)
    paid = _as_decimal(paid_amount)

    if amount == 0:
        return AllocationStatus.UNFUNDED
    if called == 0:
        return AllocationStatus.COMMITTED
    if paid == 0:
        return AllocationStatus.CALLED_UNPAID

    effective_paid = min(paid, called)
    if effective_paid < called:
        return AllocationStatus.PARTIALLY_PAID
    return AllocationStatus.FUNDED


def calculate_capital_call_status(
    call_amount,
    paid_amount,
    call_date: Optional[date],
    due_date: Optional[date],
    current_status: Optional[str] = None,
    as_of: Optional[date] = None,
) -> CapitalCallStatus:
    """
    Derive a capital call's own sub-status.

    Fully paid wins over everything, including a previous default. A
    defaulted call otherwise stays defaulted.
    """
    as_of = as_of or date.today()
    call_amount = _as_decimal(call_amount)
    paid = _as_decimal(paid_amount)

    if call_amount > 0 and paid >= call_amount:
        return CapitalCallStatus.PAID
    if current_status == CapitalCallStatus.DEFAULTED.value:
        return CapitalCallStatus.DEFAULTED
    if due_date is not None and as_of > due_date:
        return CapitalCallStatus.OVERDUE
    if paid > 0:
        return CapitalCallStatus.PARTIALLY_PAID
    if call_date is not None and call_date > as_of:
        return CapitalCallStatus.SCHEDULED
    return CapitalCallStatus.CALLED

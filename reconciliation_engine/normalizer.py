"""
Capital Call Normalizer

Turns a raw call request (dollar amount or percentage of commitment) into a
fixed dollar amount, once, at creation time.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from dateutil.relativedelta import relativedelta

from Config.constants_core import DEFAULT_CALL_DUE_MONTHS, MAX_CALL_PERCENTAGE
from Shared_Utils.enum import AmountType
from Shared_Utils.precision import PrecisionUtils
from reconciliation_engine.exceptions import InvariantViolation, ValidationError


@dataclass(frozen=True)
class NormalizedCall:
    """Dollar amount to store on the CapitalCall plus the audit trail of how it was specified."""

    call_amount: Decimal
    amount_type: AmountType
    call_pct: Optional[Decimal] = None


class CapitalCallNormalizer:
    """
    Usage:
        normalizer = CapitalCallNormalizer(precision_utils)
        call = normalizer.normalize(allocation.amount, totals.total_called, 25, 'percentage')
    """

    def __init__(
        self,
        precision_utils: PrecisionUtils,
        max_call_percentage: Decimal = Decimal(MAX_CALL_PERCENTAGE),
        call_due_months: int = DEFAULT_CALL_DUE_MONTHS,
    ):
        self.precision = precision_utils
        self.max_call_percentage = Decimal(max_call_percentage)
        self.call_due_months = call_due_months

    @staticmethod
    def parse_amount_type(amount_type: Union[str, AmountType]) -> AmountType:
        if isinstance(amount_type, AmountType):
            return amount_type
        try:
            return AmountType(str(amount_type).strip().lower())
        except ValueError:
            raise ValidationError('amount_type', amount_type, f"must be one of {AmountType.values()}")

    def _parse_raw_amount(self, raw_amount) -> Decimal:
        if raw_amount is None or isinstance(raw_amount, bool):
            raise ValidationError('amount', raw_amount, "amount is required")
        try:
            value = raw_amount if isinstance(raw_amount, Decimal) else Decimal(str(raw_amount))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError('amount', raw_amount, "not a number")
        if not value.is_finite():
            raise ValidationError('amount', raw_amount, "not a finite number")
        if value <= 0:
            raise ValidationError('amount', raw_amount, "must be positive")
        return value

    def to_dollars(self, commitment_amount, raw_amount, amount_type) -> NormalizedCall:
        """Resolve the dollar amount without checking the commitment ceiling."""
        amount_type = self.parse_amount_type(amount_type)
        value = self._parse_raw_amount(raw_amount)

        if amount_type == AmountType.PERCENTAGE:
            if value > self.max_call_percentage:
                raise ValidationError(
                    'amount', raw_amount, f"percentage must be between 0 and {self.max_call_percentage}"
                )
            call_amount = self.precision.percent_of(commitment_amount, value)
            if call_amount <= 0:
                raise ValidationError(
                    'amount', raw_amount, f"{value}% of {commitment_amount} rounds to zero dollars"
                )
            return NormalizedCall(call_amount=call_amount, amount_type=amount_type, call_pct=value)

        call_amount = self.precision.to_money(value)
        if call_amount <= 0:
            raise ValidationError('amount', raw_amount, "rounds to zero dollars")
        return NormalizedCall(call_amount=call_amount, amount_type=amount_type)

    def normalize(self, commitment_amount, already_called, raw_amount, amount_type) -> NormalizedCall:
        """
        Resolve the dollar amount and enforce the commitment ceiling.

        Args:
            commitment_amount: allocation.amount at the moment of creation
            already_called: sum of the allocation's active call amounts
            raw_amount: dollars, or a percentage of commitment_amount
            amount_type: 'dollar' or 'percentage'

        Raises:
            ValidationError: bad amount or amount type
            InvariantViolation: cumulative calls would exceed the commitment
        """
        normalized = self.to_dollars(commitment_amount, raw_amount, amount_type)

        commitment = self.precision.to_money(commitment_amount)
        called = self.precision.to_money(already_called)
        new_total = called + normalized.call_amount
        if new_total > commitment:
            raise InvariantViolation(
                'call_ceiling',
                f"calls would total {new_total} against a commitment of {commitment}",
                commitment=commitment,
                already_called=called,
                requested=normalized.call_amount,
                available=max(commitment - called, Decimal('0.00')),
            )
        return normalized

    def due_date_for(self, call_date: date) -> date:
        return call_date + relativedelta(months=self.call_due_months)

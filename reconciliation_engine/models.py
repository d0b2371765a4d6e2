"""
Data models for the Reconciliation Engine.

Plain value objects passed between the aggregators, the synchronizer and the
engine's callers. ORM rows live in TableModels; nothing here is persisted.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional, Union

from Config.constants_core import REPORT_PREVIEW_LIMIT
from Shared_Utils.enum import AllocationStatus, AnomalyKind

ZERO = Decimal('0.00')


@dataclass(frozen=True)
class CallTotals:
    """Aggregate of one allocation's active (non-cancelled) capital calls."""

    total_called: Decimal = ZERO
    total_paid: Decimal = ZERO
    call_count: int = 0


@dataclass(frozen=True)
class FundMetrics:
    """Fund-level rollup. paid_capital doubles as AUM."""

    fund_id: int
    committed_capital: Decimal = ZERO
    called_capital: Decimal = ZERO
    uncalled_capital: Decimal = ZERO
    paid_capital: Decimal = ZERO
    allocation_count: int = 0

    @property
    def aum(self) -> Decimal:
        return self.paid_capital

    def __str__(self) -> str:
        return (
            f"FundMetrics(fund {self.fund_id}: committed ${self.committed_capital:,.2f}, "
            f"called ${self.called_capital:,.2f}, uncalled ${self.uncalled_capital:,.2f}, "
            f"AUM ${self.paid_capital:,.2f})"
        )


@dataclass(frozen=True)
class CanonicalAllocationState:
    """What an allocation's derived fields should hold."""

    allocation_id: int
    called_amount: Decimal
    paid_amount: Decimal
    status: AllocationStatus


@dataclass
class AllocationCorrection:
    """Before/after of one allocation written by recompute or the repair sweep."""

    allocation_id: int
    fund_id: int
    previous_called: Decimal
    new_called: Decimal
    previous_paid: Decimal
    new_paid: Decimal
    previous_status: str
    new_status: str

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.new_status

    def __str__(self) -> str:
        parts = [f"allocation {self.allocation_id}:"]
        if self.previous_called != self.new_called:
            parts.append(f"called {self.previous_called} → {self.new_called}")
        if self.previous_paid != self.new_paid:
            parts.append(f"paid {self.previous_paid} → {self.new_paid}")
        if self.status_changed:
            parts.append(f"status {self.previous_status} → {self.new_status}")
        return " ".join(parts)


@dataclass(frozen=True)
class RepairAnomaly:
    """A data condition flagged for a human decision rather than corrected."""

    kind: AnomalyKind
    allocation_id: int
    amount: Decimal
    capital_call_id: Optional[int] = None
    payment_id: Optional[int] = None
    description: str = ""

    def __str__(self) -> str:
        return f"{self.kind.value}: allocation {self.allocation_id} ${self.amount:,.2f} {self.description}".rstrip()


@dataclass(frozen=True)
class RepairFailure:
    entity_id: int
    error: str
    entity: str = 'allocation'

    def __str__(self) -> str:
        return f"{self.entity} {self.entity_id}: {self.error}"


@dataclass
class RepairReport:
    """
    Result of a repair sweep.

    `writes` counts every row the sweep changed; a second sweep with no
    intervening mutation reports writes == 0.
    """

    scope: Union[int, str, List[int]]
    batch_id: uuid.UUID = field(default_factory=uuid.uuid4)

    allocations_inspected: int = 0
    allocations_repaired: int = 0
    funds_inspected: int = 0
    funds_repaired: int = 0

    corrections: List[AllocationCorrection] = field(default_factory=list)
    failures: List[RepairFailure] = field(default_factory=list)
    anomalies: List[RepairAnomaly] = field(default_factory=list)

    duration_ms: Optional[int] = None

    @property
    def writes(self) -> int:
        return self.allocations_repaired + self.funds_repaired

    @property
    def has_failures(self) -> bool:
        return len(self.failures) > 0

    @property
    def has_anomalies(self) -> bool:
        return len(self.anomalies) > 0

    def failed_ids(self, entity: str = 'allocation') -> List[int]:
        return [f.entity_id for f in self.failures if f.entity == entity]

    @property
    def total_overpayment(self) -> Decimal:
        return sum((a.amount for a in self.anomalies if a.kind != AnomalyKind.OVER_CALLED), ZERO)

    def __str__(self) -> str:
        status = "❌ FAILURES" if self.has_failures else "✅ OK"
        parts = [
            f"RepairReport({status} scope={self.scope} batch={self.batch_id})",
            f"  Allocations: {self.allocations_repaired}/{self.allocations_inspected} repaired",
            f"  Funds: {self.funds_repaired}/{self.funds_inspected} repaired",
        ]
        if self.duration_ms is not None:
            parts.append(f"  Duration: {self.duration_ms:,}ms")

        if self.has_anomalies:
            parts.append(f"  ⚠️  Anomalies: {len(self.anomalies)}")
            for anomaly in self.anomalies[:REPORT_PREVIEW_LIMIT]:
                parts.append(f"    - {anomaly}")

        if self.has_failures:
            parts.append(f"  ❌ Failures: {len(self.failures)}")
            for failure in self.failures[:REPORT_PREVIEW_LIMIT]:
                parts.append(f"    - {failure}")

        return "\n".join(parts)


@dataclass(frozen=True)
class DuplicateGroup:
    """Allocations sharing one (fund, deal) pair, oldest first."""

    fund_id: int
    deal_id: int
    allocation_ids: List[int]

    @property
    def size(self) -> int:
        return len(self.allocation_ids)


@dataclass
class MergeResult:
    fund_id: int
    deal_id: int
    survivor_id: int
    merged_ids: List[int] = field(default_factory=list)
    calls_repointed: int = 0
    amount: Decimal = ZERO
    paid_amount: Decimal = ZERO
    status: Optional[str] = None

    @property
    def merged(self) -> bool:
        return len(self.merged_ids) > 0


@dataclass(frozen=True)
class CapitalCallSummary:
    id: int
    call_amount: Decimal
    amount_type: str
    call_pct: Optional[Decimal]
    paid_amount: Decimal
    outstanding_amount: Decimal
    status: str
    call_date: date
    due_date: Optional[date]
    cancelled: bool


@dataclass(frozen=True)
class AllocationProgress:
    allocation_id: int
    fund_id: int
    deal_id: int
    committed_amount: Decimal
    called_amount: Decimal
    paid_amount: Decimal
    uncalled_amount: Decimal
    outstanding_amount: Decimal
    percentage_called: Decimal
    percentage_paid: Decimal
    status: str
    capital_calls: List[CapitalCallSummary] = field(default_factory=list)


@dataclass
class ValidationResult:
    """
    Result of a read-only integrity check.

    Contains validation checks and any discrepancies found.
    """

    is_valid: bool
    scope: Union[int, str]

    total_allocations: int = 0
    total_capital_calls: int = 0
    total_funds: int = 0

    status_mismatches: int = 0
    amount_mismatches: int = 0
    ceiling_breaches: int = 0
    overpaid_calls: int = 0
    unapplied_payments: int = 0
    duplicate_pairs: int = 0
    fund_metric_mismatches: int = 0

    error_messages: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return not self.is_valid or len(self.error_messages) > 0

    @property
    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    @property
    def has_discrepancies(self) -> bool:
        return (
            self.status_mismatches > 0 or
            self.amount_mismatches > 0 or
            self.ceiling_breaches > 0 or
            self.duplicate_pairs > 0 or
            self.fund_metric_mismatches > 0
        )

    def add_error(self, message: str):
        self.error_messages.append(message)
        self.is_valid = False

    def add_warning(self, message: str):
        self.warnings.append(message)

    def __str__(self) -> str:
        status = "✅ VALID" if self.is_valid else "❌ INVALID"
        parts = [
            f"ValidationResult({status} scope={self.scope})",
            f"  Allocations: {self.total_allocations}  Capital calls: {self.total_capital_calls}  Funds: {self.total_funds}",
        ]

        if self.has_discrepancies:
            parts.append("  ⚠️  Discrepancies found:")
            if self.status_mismatches:
                parts.append(f"    - Status drift: {self.status_mismatches}")
            if self.amount_mismatches:
                parts.append(f"    - Called/paid drift: {self.amount_mismatches}")
            if self.ceiling_breaches:
                parts.append(f"    - Calls above commitment: {self.ceiling_breaches}")
            if self.duplicate_pairs:
                parts.append(f"    - Duplicate (fund, deal) pairs: {self.duplicate_pairs}")
            if self.fund_metric_mismatches:
                parts.append(f"    - Fund metric drift: {self.fund_metric_mismatches}")

        if self.has_errors:
            parts.append(f"  ❌ Errors: {len(self.error_messages)}")
            for err in self.error_messages[:REPORT_PREVIEW_LIMIT]:
                parts.append(f"    - {err}")

        if self.has_warnings:
            parts.append(f"  ⚠️  Warnings: {len(self.warnings)}")
            for warn in self.warnings[:REPORT_PREVIEW_LIMIT]:
                parts.append(f"    - {warn}")

        return "\n".join(parts)

"""
Allocation / Capital Call Reconciliation Engine

Keeps allocation and fund figures derived from capital calls and payments
consistent under concurrent mutation.

Key Components:
- status_calculator: the one allocation status formula (and the call sub-status)
- CapitalCallNormalizer: percentage -> fixed dollar amount, ceiling check
- CapitalCallAggregator / FundMetricsAggregator: single-query rollups
- ReconciliationSynchronizer: transactional recompute and the repair sweep
- ConflictResolver: duplicate (fund, deal) detection and merge
- AllocationValidator: read-only integrity check
- AllocationReconciliationEngine: the facade callers use

Usage:
    from reconciliation_engine import AllocationReconciliationEngine

    engine = AllocationReconciliationEngine(db_manager, logger_manager, config)
    report = await engine.reconcile('all')
"""

from .engine import AllocationReconciliationEngine
from .exceptions import (
    ReconciliationError,
    ValidationError,
    ConflictError,
    InvariantViolation,
    NotFoundError,
)
from .models import (
    AllocationProgress,
    FundMetrics,
    MergeResult,
    RepairReport,
    ValidationResult,
)
from .status_calculator import calculate_allocation_status, calculate_capital_call_status

__all__ = [
    'AllocationReconciliationEngine',
    'ReconciliationError',
    'ValidationError',
    'ConflictError',
    'InvariantViolation',
    'NotFoundError',
    'AllocationProgress',
    'FundMetrics',
    'MergeResult',
    'RepairReport',
    'ValidationResult',
    'calculate_allocation_status',
    'calculate_capital_call_status',
]

__version__ = '1.0.0'

"""
Core reconciliation constants shared across all modules.

These define fundamental engine behavior and rarely change.
Tunable business rules live on EngineConfig; these are the defaults it starts from.
"""
from decimal import Decimal

# ============================================================================
# Money & Precision
# ============================================================================

MONEY_DECIMAL_PLACES = 2
"""Dollar amounts are stored and compared at cent precision"""

MONEY_ZERO = Decimal('0.00')

PERCENT_BASE = Decimal('100')
"""Percentage-denominated capital calls are expressed out of 100"""

MAX_CALL_PERCENTAGE = Decimal('100')
"""A single call may request at most the full commitment"""

# ============================================================================
# Capital Call Defaults
# ============================================================================

DEFAULT_CALL_DUE_MONTHS = 1
"""Due date = call date + 1 month unless the caller supplies one"""

# ============================================================================
# Repair Sweep
# ============================================================================

DEFAULT_SWEEP_BATCH_SIZE = 100
"""Allocations processed per short transaction during a repair sweep"""

MAX_SWEEP_BATCH_SIZE = 5000
"""Hard limit: larger batches hold row locks long enough to starve request traffic"""

RECONCILE_ALL = 'all'
"""Scope token for a full repair sweep"""

# ============================================================================
# Display Defaults
# ============================================================================

REPORT_PREVIEW_LIMIT = 3
"""Number of failures/anomalies echoed in a report's string form"""

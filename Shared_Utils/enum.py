from enum import Enum


class AllocationStatus(str, Enum):
    """Funding state of a commitment. Persisted as the string value."""
    UNFUNDED = "unfunded"
    COMMITTED = "committed"
    CALLED_UNPAID = "called_unpaid"
    PARTIALLY_PAID = "partially_paid"
    FUNDED = "funded"
    WRITTEN_OFF = "written_off"  # terminal, administrative only

    @classmethod
    def values(cls):
        return [member.value for member in cls]


class CapitalCallStatus(str, Enum):
    SCHEDULED = "scheduled"
    CALLED = "called"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    DEFAULTED = "defaulted"

    @classmethod
    def values(cls):
        return [member.value for member in cls]


class AmountType(str, Enum):
    PERCENTAGE = "percentage"
    DOLLAR = "dollar"

    @classmethod
    def values(cls):
        return [member.value for member in cls]


class AnomalyKind(str, Enum):
    """Data conditions the repair sweep reports but never auto-corrects."""
    CALL_OVERPAID = "call_overpaid"
    UNAPPLIED_PAYMENT = "unapplied_payment"
    OVER_CALLED = "over_called"

from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation, localcontext, getcontext
from typing import Optional

from Config.constants_core import MONEY_DECIMAL_PLACES, PERCENT_BASE


class PrecisionUtils:
    """
    Money arithmetic for the reconciliation engine.

    Every amount that is persisted or compared passes through to_money(), so
    values read back from the database (Decimal on PostgreSQL, float-backed on
    SQLite) compare equal to values computed in Python.
    """

    def __init__(self, logger_manager=None, decimal_places: int = MONEY_DECIMAL_PLACES):
        self.logger = logger_manager.get_logger('shared_logger') if logger_manager else None
        self.decimal_places = decimal_places
        self.money_quantum = self.quant_from_places(decimal_places)

    @staticmethod
    def quant_from_places(decimal_places: int) -> Decimal:
        """Return a quantizer Decimal like 1e-2 for decimal_places=2."""
        return Decimal('1').scaleb(-decimal_places)

    def safe_decimal(self, value, default="0") -> Decimal:
        """Decimal(value) via str(), so floats don't drag binary noise along; None -> default."""
        if value is None:
            return Decimal(default)
        if isinstance(value, Decimal):
            return value
        try:
            return Decimal(str(value))
        except (TypeError, ValueError, InvalidOperation):
            if self.logger:
                self.logger.warning(f"⚠️ safe_decimal: bad input {value!r}; using {default}")
            return Decimal(default)

    def safe_quantize(self, value: Decimal, precision: Decimal, rounding=ROUND_HALF_EVEN) -> Decimal:
        if not value.is_finite():
            raise InvalidOperation(f"non-finite amount {value}")
        try:
            return value.quantize(precision, rounding=rounding)
        except InvalidOperation:
            # Widen the context for very large amounts rather than failing the quantize
            with localcontext() as ctx:
                int_digits = len(abs(value).to_integral_value().as_tuple().digits) or 1
                scale = -precision.as_tuple().exponent
                ctx.prec = max(int_digits + scale, getcontext().prec, 28)
                return value.quantize(precision, rounding=rounding)

    def to_money(self, value) -> Decimal:
        """Coerce to Decimal and round to cents with banker's rounding."""
        return self.safe_quantize(self.safe_decimal(value), self.money_quantum)

    def percent_of(self, amount, percentage) -> Decimal:
        """percentage/100 * amount, rounded to cents."""
        amount = self.safe_decimal(amount)
        percentage = self.safe_decimal(percentage)
        return self.to_money(percentage / PERCENT_BASE * amount)

    def ratio_pct(self, part, whole) -> Decimal:
        """part as a percentage of whole (0 when whole is 0), two decimal places."""
        whole = self.safe_decimal(whole)
        if whole == 0:
            return Decimal('0.00')
        return self.safe_quantize(self.safe_decimal(part) / whole * PERCENT_BASE, Decimal('0.01'))

    def clamp(self, value, floor: Optional[Decimal] = None, ceiling: Optional[Decimal] = None) -> Decimal:
        value = self.to_money(value)
        if floor is not None and value < floor:
            return self.to_money(floor)
        if ceiling is not None and value > ceiling:
            return self.to_money(ceiling)
        return value

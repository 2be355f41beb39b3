"""Database-agnostic column types.

Works with both SQLite and PostgreSQL.
"""
from decimal import Decimal

from sqlalchemy import BigInteger, Uuid
from sqlalchemy.types import TypeDecorator

UUIDType = Uuid


class FixedDecimal(TypeDecorator):
    """Exact decimal stored as a scaled integer.

    SQLite keeps NUMERIC as REAL, so amounts are persisted as integer
    hundredths and handed back as ``Decimal`` quantized to ``scale`` places.
    Arithmetic in UPDATE statements (``balance - :amount``) stays exact on
    every backend because both operands are bound through this type.
    """

    impl = BigInteger
    cache_ok = True

    def __init__(self, scale: int = 2):
        super().__init__()
        self.scale = scale
        self._factor = Decimal(10) ** scale
        self._quantum = Decimal(1).scaleb(-scale)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        scaled = Decimal(value) * self._factor
        if scaled != scaled.to_integral_value():
            raise ValueError(f"{value} has more than {self.scale} decimal places")
        return int(scaled)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return (Decimal(int(value)) / self._factor).quantize(self._quantum)

    @property
    def python_type(self):
        return Decimal

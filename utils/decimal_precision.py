#!/usr/bin/env python3
"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

from config import Config
from utils.ledger_exceptions import InvalidAmount, InvalidPercent

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

Numeric = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    MONEY_PRECISION = Config.MONEY_PRECISION
    PERCENT_PRECISION = Config.PERCENT_PRECISION
    HUNDRED = Decimal("100")
    MAX_AMOUNT = Decimal("999999999999999999")

    @classmethod
    def to_decimal(cls, value: Numeric, context: str = "monetary") -> Decimal:
        """Safely convert any numeric value to Decimal with validation"""
        if value is None:
            raise InvalidAmount(f"Missing value for {context}")

        if isinstance(value, bool):
            raise InvalidAmount(f"Boolean is not a valid value for {context}")

        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                # Convert to string first to avoid float precision issues
                decimal_value = Decimal(str(value).strip())
            except (InvalidOperation, ValueError) as e:
                logger.error(f"Failed to convert {value!r} to Decimal in context {context}: {e}")
                raise InvalidAmount(f"Invalid number {value!r} for {context}") from e

        if not decimal_value.is_finite():
            raise InvalidAmount(f"Non-finite value {value!r} for {context}")
        if abs(decimal_value) > cls.MAX_AMOUNT:
            raise InvalidAmount(f"Value {decimal_value} out of range for {context}")

        return decimal_value

    @classmethod
    def quantize_money(cls, value: Numeric, context: str = "monetary") -> Decimal:
        """Round to the ledger's minor unit using ROUND_HALF_UP"""
        return cls.to_decimal(value, context).quantize(cls.MONEY_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def positive_amount(cls, value: Numeric, context: str = "amount") -> Decimal:
        """Quantized amount that must be strictly positive"""
        amount = cls.quantize_money(value, context)
        if amount <= 0:
            raise InvalidAmount(f"{context} must be positive, got {value!r}")
        return amount

    @classmethod
    def non_negative_amount(cls, value: Numeric, context: str = "amount") -> Decimal:
        amount = cls.quantize_money(value, context)
        if amount < 0:
            raise InvalidAmount(f"{context} must not be negative, got {value!r}")
        return amount

    @classmethod
    def to_percent(cls, value: Numeric, context: str = "percent") -> Decimal:
        """Validate a percentage in [0, 100]"""
        try:
            percent = cls.to_decimal(value, context)
        except InvalidAmount as e:
            raise InvalidPercent(str(e)) from e
        if percent < 0 or percent > cls.HUNDRED:
            raise InvalidPercent(f"{context} must be between 0 and 100, got {value!r}")
        return percent.quantize(cls.PERCENT_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def percent_of(cls, amount: Numeric, percent: Numeric) -> Decimal:
        """amount * percent / 100, rounded to the minor unit"""
        return cls.quantize_money(
            cls.to_decimal(amount) * cls.to_decimal(percent) / cls.HUNDRED
        )

#!/usr/bin/env python3
"""
Decimal Precision Utilities for Stake Amounts
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, InvalidOperation, getcontext
from typing import Optional, Union

from config import Config

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 38

# Smallest unit the contract accepts (wei)
STAKE_PRECISION = Decimal("0.000000000000000001")
MAX_STAKE_AMOUNT = Decimal("1000000")


class MonetaryDecimal:
    """Enforces Decimal-only stake handling with ledger precision"""

    @classmethod
    def to_decimal(cls, value: Union[str, int, float, Decimal]) -> Decimal:
        """Convert any numeric value to Decimal via str to avoid float artefacts"""
        if isinstance(value, Decimal):
            return value
        return Decimal(str(value))

    @classmethod
    def parse_stake_amount(cls, raw: str) -> Optional[Decimal]:
        """
        Parse a user-typed stake amount.

        Returns the Decimal when it is a finite, positive number no finer than
        one wei and below MAX_STAKE_AMOUNT; otherwise None.
        """
        if raw is None:
            return None
        value = raw.strip().replace(',', '.')
        if value.upper().endswith(Config.CURRENCY_SYMBOL.upper()):
            value = value[: -len(Config.CURRENCY_SYMBOL)].strip()
        if not value:
            return None

        try:
            amount = Decimal(value)
        except InvalidOperation:
            return None

        if not amount.is_finite() or amount <= 0:
            return None
        if amount > MAX_STAKE_AMOUNT:
            logger.warning(f"Rejected oversized stake amount: {amount}")
            return None
        if amount != amount.quantize(STAKE_PRECISION):
            return None
        return amount

    @classmethod
    def format_amount(cls, amount: Union[Decimal, int, float, str]) -> str:
        """Render an amount with the configured currency symbol"""
        decimal_amount = cls.to_decimal(amount)
        normalized = decimal_amount.normalize()
        # normalize() turns 10 into 1E+1
        text = format(normalized, 'f')
        return f"{text} {Config.CURRENCY_SYMBOL}"

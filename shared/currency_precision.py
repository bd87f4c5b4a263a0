"""
Amount precision helpers.

Everything on-chain is an integer count of the asset's smallest unit (wei for
the native coin, base units for tokens). Display amounts are Decimals derived
from that integer and the asset's ``decimals``.
"""

from decimal import Decimal, ROUND_DOWN
from typing import Union

NATIVE_DECIMALS = 18


class AmountConverter:
    """Utility class for converting between display amounts and smallest units"""

    @staticmethod
    def to_smallest_units(amount: Union[Decimal, str, int], decimals: int = NATIVE_DECIMALS) -> int:
        """Convert display amount to smallest units (for storage and signing)"""
        if decimals < 0:
            raise ValueError(f"Invalid decimals: {decimals}")
        value = Decimal(str(amount)) * (Decimal(10) ** decimals)
        # Never round up: a rounded-up transfer amount can exceed the balance
        return int(value.to_integral_value(rounding=ROUND_DOWN))

    @staticmethod
    def from_smallest_units(smallest_units: int, decimals: int = NATIVE_DECIMALS) -> Decimal:
        """Convert smallest units to display amount"""
        if smallest_units is None:
            return Decimal("0")
        amount = Decimal(int(smallest_units)) / (Decimal(10) ** decimals)
        if decimals == 0:
            return amount.quantize(Decimal("1"))
        return amount.quantize(Decimal("0." + "0" * decimals))

    @staticmethod
    def format_display_amount(smallest_units: int, decimals: int = NATIVE_DECIMALS,
                              symbol: str = "", display_decimals: int = 6) -> str:
        """Format amount for display, trimmed to ``display_decimals`` places"""
        amount = AmountConverter.from_smallest_units(smallest_units, decimals)
        text = f"{amount:.{min(display_decimals, decimals)}f}"
        return f"{text} {symbol}".strip()

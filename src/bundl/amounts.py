"""Token amount conversion helpers using integer base units."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_FLOOR


DEFAULT_DECIMALS = 6


def _unit(decimals: int) -> Decimal:
    if decimals < 0:
        raise ValueError("decimals must be >= 0")
    return Decimal(10) ** decimals


def _to_base_units(value: Decimal | float | int | str, decimals: int, rounding: str) -> int:
    quant = Decimal(1).scaleb(-decimals)
    try:
        dec = Decimal(str(value).strip())
        if not dec.is_finite():
            raise ValueError(f"Invalid amount: {value}")
        dec = dec.quantize(quant, rounding=rounding)
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value}") from e
    return int(dec * _unit(decimals))


def amount_to_base_units(value: Decimal | float | int | str, decimals: int = DEFAULT_DECIMALS) -> int:
    """Convert a charge amount to base units, rounding up (conservative)."""
    return _to_base_units(value, decimals, ROUND_CEILING)


def limit_to_base_units(value: Decimal | float | int | str, decimals: int = DEFAULT_DECIMALS) -> int:
    """Convert a cap or allowance to base units, rounding down (conservative)."""
    return _to_base_units(value, decimals, ROUND_FLOOR)


def base_units_to_decimal(value: int, decimals: int = DEFAULT_DECIMALS) -> Decimal:
    return Decimal(value) / _unit(decimals)


def format_base_units(value: int, decimals: int = DEFAULT_DECIMALS, symbol: str = "USDC") -> str:
    """Format integer base units for display, e.g. ``12.50 USDC``."""
    return f"{base_units_to_decimal(value, decimals):.2f} {symbol}"

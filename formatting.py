from __future__ import annotations
from typing import Optional

from pricing import STABLECOIN_CODES


def format_currency(value: Optional[float], decimals: int = 2, prefix: str = "$") -> str:
    if value is None:
        return f"{prefix}{0:.{decimals}f}"
    return f"{prefix}{float(value):,.{decimals}f}"


def _crypto_decimals(code: str) -> int:
    if code == "BTC":
        return 8
    if code == "ETH":
        return 6
    if code in STABLECOIN_CODES:
        return 2
    return 4


def format_crypto_amount(amount: Optional[float], code: str) -> str:
    """Amount with up to the asset's usual number of decimals, trailing zeros dropped."""
    if amount is None:
        return "0"
    text = f"{float(amount):,.{_crypto_decimals(code)}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_duration(seconds: Optional[int]) -> str:
    if not seconds:
        return "0s"
    minutes, rest = divmod(int(seconds), 60)
    if minutes == 0:
        return f"{rest}s"
    if rest == 0:
        return f"{minutes}m"
    return f"{minutes}m {rest}s"

from __future__ import annotations

import datetime as dt
import math
from typing import Iterable, List, Optional, Sequence

_MONTHS = ("JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC")
_MONTH_INDEX = {name: idx + 1 for idx, name in enumerate(_MONTHS)}


def parse_expiry(text: str) -> dt.date:
    """Parse ``DD-MMM-YYYY`` (month abbreviation in any case)."""

    parts = str(text).strip().split("-")
    if len(parts) != 3:
        raise ValueError(f"Invalid expiry {text!r}; expected DD-MMM-YYYY")
    day_raw, month_raw, year_raw = parts
    month = _MONTH_INDEX.get(month_raw.strip().upper())
    if month is None:
        raise ValueError(f"Invalid expiry month in {text!r}")
    try:
        return dt.date(int(year_raw), month, int(day_raw))
    except ValueError as exc:
        raise ValueError(f"Invalid expiry {text!r}: {exc}") from exc


def format_expiry(day: dt.date) -> str:
    return f"{day.day:02d}-{_MONTHS[day.month - 1]}-{day.year:04d}"


def symbol_expiry(day: dt.date) -> str:
    """Contract-symbol date code, e.g. 13JAN26."""

    return f"{day.day:02d}{_MONTHS[day.month - 1]}{day.year % 100:02d}"


def sort_expiries(values: Iterable[str]) -> List[str]:
    """Normalise to DD-MMM-YYYY, drop duplicates, ascending. Raises on a bad entry."""

    parsed = {parse_expiry(value) for value in values if str(value).strip()}
    return [format_expiry(day) for day in sorted(parsed)]


def is_expiry_day(expiries: Sequence[str], today: dt.date) -> bool:
    if not expiries:
        return False
    try:
        return parse_expiry(expiries[0]) == today
    except ValueError:
        return False


def trading_expiry(expiries: Sequence[str], explicit: Optional[str] = None) -> Optional[str]:
    """Expiry to trade: the explicit one, else next week's, else the only one listed."""

    if explicit:
        return explicit
    if len(expiries) > 1:
        return expiries[1]
    if expiries:
        return expiries[0]
    return None


def atm_strike(spot: float, step: int = 50) -> int:
    """Nearest ``step`` strike, halves rounding up."""

    if step <= 0:
        raise ValueError("strike step must be positive")
    return int(math.floor(spot / step + 0.5) * step)


def option_symbol(index_symbol: str, expiry: dt.date, option_type: str, strike: float) -> str:
    flag = "C" if option_type.upper() == "CE" else "P"
    return f"{index_symbol.upper()}{symbol_expiry(expiry)}{flag}{int(strike)}"


def expiry_from_symbol(symbol: str, index_symbol: str) -> dt.date:
    """Inverse of ``option_symbol`` for the date part."""

    code = symbol[len(index_symbol):len(index_symbol) + 7]
    if len(code) != 7:
        raise ValueError(f"Cannot read expiry from {symbol!r}")
    return parse_expiry(f"{code[:2]}-{code[2:5]}-20{code[5:]}")


__all__ = [
    "atm_strike",
    "expiry_from_symbol",
    "format_expiry",
    "is_expiry_day",
    "option_symbol",
    "parse_expiry",
    "sort_expiries",
    "symbol_expiry",
    "trading_expiry",
]

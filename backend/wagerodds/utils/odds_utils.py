"""Price-format conversions shared by the normalizer and the API layer."""

from __future__ import annotations

import math
from typing import Any

PRICE_FORMATS = ("auto", "american", "decimal", "fractional")


def _round_half_away(value: float) -> int:
    """Round to the nearest int, halves away from zero (not banker's rounding)."""
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def to_float(value: Any) -> float | None:
    """Lenient numeric parse: ints, floats and signed strings like ``"+130"``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            result = float(text)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def parse_fractional(value: Any) -> float | None:
    """Convert fractional odds (``"5/2"`` or a bare ratio) to decimal odds."""
    if isinstance(value, str) and "/" in value:
        num, _, den = value.partition("/")
        numerator = to_float(num)
        denominator = to_float(den)
        if numerator is None or denominator is None or denominator <= 0 or numerator <= 0:
            return None
        return 1.0 + numerator / denominator
    ratio = to_float(value)
    if ratio is None or ratio <= 0:
        return None
    return 1.0 + ratio


def is_valid_american(price: int | float | None) -> bool:
    if price is None:
        return False
    return price >= 100 or price <= -100


def american_from_decimal(decimal: float) -> int:
    """Decimal (European) odds to an American price.

    >>> american_from_decimal(2.3)
    130
    >>> american_from_decimal(1.67)
    -149
    """
    if decimal <= 1.0:
        raise ValueError(f"decimal odds must be greater than 1, got {decimal!r}")
    if decimal >= 2.0:
        return _round_half_away((decimal - 1.0) * 100.0)
    return _round_half_away(-100.0 / (decimal - 1.0))


def decimal_from_american(american: int | float) -> float:
    if not is_valid_american(american):
        raise ValueError(f"not an American price: {american!r}")
    if american > 0:
        return 1.0 + american / 100.0
    return 1.0 + 100.0 / abs(american)


def looks_decimal(value: float) -> bool:
    """Format heuristic: a non-integer strictly between -1 and 3 is decimal odds."""
    return -1.0 < value < 3.0 and not float(value).is_integer()


def to_american(value: Any, price_format: str = "auto") -> int | None:
    """Convert an upstream price to American odds.

    Returns None when the value is missing or cannot be a real price, so the
    caller drops the market instead of carrying a zero placeholder.
    """
    if price_format not in PRICE_FORMATS:
        raise ValueError(f"unknown price format: {price_format!r}")

    if price_format == "fractional" or (
        price_format == "auto" and isinstance(value, str) and "/" in value
    ):
        decimal = parse_fractional(value)
        return american_from_decimal(decimal) if decimal is not None else None

    number = to_float(value)
    if number is None:
        return None

    if price_format == "decimal" or (price_format == "auto" and looks_decimal(number)):
        if number <= 1.0:
            return None
        return american_from_decimal(number)

    american = _round_half_away(number)
    return american if is_valid_american(american) else None


def format_american(price: int | None) -> str:
    if price is None:
        return "N/A"
    return f"+{price}" if price > 0 else str(price)


def implied_probability(price: int) -> float:
    """Break-even win probability of an American price (vig included)."""
    if price > 0:
        return 100.0 / (price + 100.0)
    return abs(price) / (abs(price) + 100.0)


BOOKMAKER_NAMES: dict[str, str] = {
    "fanduel": "FanDuel",
    "draftkings": "DraftKings",
    "betmgm": "BetMGM",
    "caesars": "Caesars",
    "bovada": "Bovada",
    "betrivers": "BetRivers",
    "pointsbetus": "PointsBet",
    "williamhill_us": "William Hill",
    "espn_bet": "ESPN BET",
}


def bookmaker_display_name(key: str) -> str:
    """Human label for a bookmaker key; unknown keys are title-cased."""
    if key in BOOKMAKER_NAMES:
        return BOOKMAKER_NAMES[key]
    return " ".join(part.capitalize() for part in key.replace("-", "_").split("_") if part)

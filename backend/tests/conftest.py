"""
backend/tests/conftest.py

Purpose:
    Shared pytest bootstrap: import path for the backend package plus small
    builders for canonical odds objects used across test modules.
"""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

_THIS_FILE = Path(__file__).resolve()
_BACKEND_DIR = _THIS_FILE.parents[1]

if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

from wagerodds.models.odds import MarketKind, MarketQuote, QuoteSet, Side  # noqa: E402

T0 = datetime(2025, 10, 19, 17, 0, tzinfo=timezone.utc)


def make_quote(
    provider_id: str = "espn",
    bookmaker: str = "draftkings",
    market: MarketKind = MarketKind.moneyline,
    side: Side = Side.home,
    price: int = -150,
    line: float | None = None,
    observed_at: datetime = T0,
    event_id: str = "401547417",
) -> MarketQuote:
    return MarketQuote(
        provider_id=provider_id,
        event_id=event_id,
        bookmaker=bookmaker,
        market=market,
        side=side,
        price=price,
        line=line,
        observed_at=observed_at,
    )


def make_quote_set(provider_id: str, *quotes: MarketQuote, event_id: str = "401547417") -> QuoteSet:
    return QuoteSet(provider_id=provider_id, event_id=event_id, fetched_at=T0, quotes=tuple(quotes))

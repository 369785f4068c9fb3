"""Best price across books for one market/side."""

from __future__ import annotations

from typing import Iterable, Optional, Union

from wagerodds.models.odds import MARKET_SIDES, BestPrice, MarketKind, MarketQuote, QuoteSet, Side

_LINE_TOLERANCE = 1e-9

QuoteSource = Union[QuoteSet, Iterable[QuoteSet]]


def _as_sets(quote_sets: QuoteSource) -> list[QuoteSet]:
    if isinstance(quote_sets, QuoteSet):
        return [quote_sets]
    return list(quote_sets)


def _rank(quote: MarketQuote) -> tuple:
    # Higher price, then newer observation, then provider id / bookmaker A-Z.
    return (-quote.price, -quote.observed_at.timestamp(), quote.provider_id, quote.bookmaker)


def best_price(
    quote_sets: QuoteSource,
    market: MarketKind,
    side: Side,
    line: Optional[float] = None,
) -> Optional[BestPrice]:
    """Most bettor-favourable quote for (market, side), or None if nobody quotes it.

    ``line`` limits the comparison to quotes at that spread/total number.
    """
    market = MarketKind(market)
    side = Side(side)
    candidates = [
        q
        for qs in _as_sets(quote_sets)
        for q in qs.select(market, side)
        if line is None or (q.line is not None and abs(q.line - line) <= _LINE_TOLERANCE)
    ]
    if not candidates:
        return None
    winner = min(candidates, key=_rank)
    return BestPrice(
        market=winner.market,
        side=winner.side,
        price=winner.price,
        line=winner.line,
        provider_id=winner.provider_id,
        bookmaker=winner.bookmaker,
        observed_at=winner.observed_at,
    )


def best_prices(quote_sets: QuoteSource) -> list[BestPrice]:
    """best_price for every market/side that has at least one quote, in canonical order."""
    sets = _as_sets(quote_sets)
    results = []
    for market, sides in MARKET_SIDES.items():
        for side in sides:
            found = best_price(sets, market, side)
            if found is not None:
                results.append(found)
    return results

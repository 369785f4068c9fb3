"""
backend/wagerodds/routers/odds.py

Purpose:
    Public odds endpoints: aggregated quotes per event, single best price,
    provider status and cache administration.

Dependencies:
    - wagerodds.services.odds_engine
    - wagerodds.services.best_price
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from wagerodds.models.odds import (
    AggregationResult,
    BestPrice,
    MarketKind,
    OddsResponse,
    ProviderStatusResponse,
    QuoteResponse,
    Side,
    filter_bookmakers,
)
from wagerodds.services.best_price import best_price, best_prices
from wagerodds.services.fallback_orchestrator import (
    NoProvidersError,
    ResolveStrategy,
    UnknownProviderError,
)
from wagerodds.services.odds_engine import OddsEngine
from wagerodds.utils.odds_utils import bookmaker_display_name, format_american

logger = logging.getLogger("wagerodds.odds")
router = APIRouter(prefix="/odds", tags=["odds"])


def get_odds_engine(request: Request) -> OddsEngine:
    return request.app.state.odds_engine


def _csv(value: Optional[str]) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


async def _resolve(
    engine: OddsEngine,
    event: str,
    sport: str,
    providers: Optional[str],
    strategy: Optional[ResolveStrategy] = None,
) -> AggregationResult:
    try:
        return await engine.resolve(event, sport, providers=_csv(providers) or None, strategy=strategy)
    except (UnknownProviderError, NoProvidersError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def build_odds_response(result: AggregationResult, bookmakers: Optional[list[str]] = None) -> OddsResponse:
    quote_sets = result.ordered_quote_sets()
    if bookmakers:
        quote_sets = filter_bookmakers(quote_sets, bookmakers)
    quotes = [
        QuoteResponse(
            provider_id=q.provider_id,
            bookmaker=q.bookmaker,
            bookmaker_name=bookmaker_display_name(q.bookmaker),
            market=q.market,
            side=q.side,
            price=q.price,
            display_price=format_american(q.price),
            line=q.line,
            observed_at=q.observed_at,
        )
        for qs in quote_sets
        for q in qs.quotes
    ]
    return OddsResponse(
        event_id=result.event_id,
        sport=result.sport_code,
        status=result.status,
        event=result.event(),
        quotes=quotes,
        best_prices=best_prices(quote_sets),
        partial_failures=result.failures,
        cached=result.cached,
    )


@router.get("", response_model=OddsResponse)
async def get_odds(
    event: str = Query(..., min_length=1, description="Provider event id"),
    sport: str = Query(..., min_length=1, description="Sport code, e.g. NFL"),
    providers: Optional[str] = Query(None, description="Comma-separated provider ids in priority order"),
    strategy: Optional[ResolveStrategy] = Query(None),
    bookmakers: Optional[str] = Query(None, description="Comma-separated bookmaker keys"),
    engine: OddsEngine = Depends(get_odds_engine),
):
    """Aggregated quotes and best prices for one event."""
    result = await _resolve(engine, event, sport, providers, strategy)
    body = build_odds_response(result, _csv(bookmakers))
    if result.exhausted:
        logger.warning(
            "All providers failed for %s/%s: %s",
            sport,
            event,
            "; ".join(f"{f.provider_id}: {f.reason}" for f in result.failures),
        )
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content=body.model_dump(mode="json", by_alias=True),
        )
    return body.model_dump(mode="json", by_alias=True)


@router.get("/best", response_model=BestPrice)
async def get_best_price(
    event: str = Query(..., min_length=1),
    sport: str = Query(..., min_length=1),
    market: MarketKind = Query(...),
    side: Side = Query(...),
    line: Optional[float] = Query(None),
    providers: Optional[str] = Query(None),
    engine: OddsEngine = Depends(get_odds_engine),
) -> BestPrice:
    result = await _resolve(engine, event, sport, providers)
    found = best_price(result.ordered_quote_sets(), market, side, line=line)
    if found is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No {market.value}/{side.value} quote for event {event}.",
        )
    return found


@router.get("/providers", response_model=list[ProviderStatusResponse])
async def list_providers(engine: OddsEngine = Depends(get_odds_engine)) -> list[ProviderStatusResponse]:
    return engine.provider_status()


@router.get("/cache/stats")
async def cache_stats(engine: OddsEngine = Depends(get_odds_engine)) -> dict:
    return engine.cache.stats()


@router.delete("/cache")
async def clear_cache(
    sport: Optional[str] = Query(None),
    event: Optional[str] = Query(None),
    engine: OddsEngine = Depends(get_odds_engine),
) -> dict:
    removed = engine.cache.invalidate(sport_code=sport, event_id=event)
    logger.info("Odds cache cleared (sport=%s event=%s): %d slots", sport, event, removed)
    return {"removed": removed}

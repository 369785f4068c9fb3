"""
backend/tests/test_odds_router.py

Purpose:
    Contract tests for the /odds endpoints: body shape, 400 for unknown
    providers, 502 when every provider failed, 404 for a missing best price,
    bookmaker filtering and cache administration. Handlers are called
    directly with an engine built from fake adapters.

Dependencies:
    - wagerodds.routers.odds
    - wagerodds.main
"""

from __future__ import annotations

import json
import logging
from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from starlette.requests import Request
from starlette.responses import Response

from wagerodds import main as main_module
from wagerodds.middleware.logging import StructuredLoggingMiddleware
from wagerodds.models.odds import MarketKind, Side
from wagerodds.providers.base import BaseOddsAdapter, Endpoint, ProviderRawPayload, TransientError
from wagerodds.routers import odds as odds_router
from wagerodds.services.aggregation_cache import AggregationCache
from wagerodds.services.odds_engine import OddsEngine

HOME = "Kansas City Chiefs"
AWAY = "Las Vegas Raiders"


def _event_payload(*books: tuple[str, int, int]) -> dict:
    return {
        "id": "evt1",
        "home_team": HOME,
        "away_team": AWAY,
        "commence_time": "2025-10-19T17:00:00Z",
        "bookmakers": [
            {
                "key": key,
                "markets": [
                    {"key": "h2h", "outcomes": [{"name": HOME, "price": home}, {"name": AWAY, "price": away}]}
                ],
            }
            for key, home, away in books
        ],
    }


class _FakeAdapter(BaseOddsAdapter):
    circuit_open = False

    def __init__(self, provider_id: str, data=None, error: Exception | None = None):
        super().__init__(client=None)
        self.provider_id = provider_id
        self.display_name = provider_id.upper()
        self.calls = 0
        self._data = data
        self._error = error

    def resolve_sport(self, sport_code: str) -> str:
        return sport_code

    def endpoints(self, event_id: str, sport_code: str) -> list[Endpoint]:
        return [Endpoint(name="event_odds", url=f"https://{self.provider_id}.test/{event_id}")]

    def extract(self, endpoint, data, event_id):
        return data

    async def fetch(self, event_id, sport_code, endpoint=None):
        self.calls += 1
        if self._error is not None:
            raise self._error
        return ProviderRawPayload(
            provider_id=self.provider_id,
            event_id=event_id,
            sport_code=sport_code,
            endpoint=endpoint.name,
            data=self._data,
            price_format="american",
        )

    def usage(self):
        return {"requests_remaining": 42}

    async def aclose(self) -> None:
        return None


def _engine(*adapters: _FakeAdapter, **kwargs) -> OddsEngine:
    return OddsEngine(list(adapters), cache=AggregationCache(ttl=300), **kwargs)


async def _get_odds(engine: OddsEngine, **overrides):
    params = {"event": "evt1", "sport": "NFL", "providers": None, "strategy": None, "bookmakers": None}
    params.update(overrides)
    return await odds_router.get_odds(engine=engine, **params)


@pytest.mark.asyncio
async def test_get_odds_merges_providers_with_best_prices():
    engine = _engine(
        _FakeAdapter("espn", _event_payload(("espn_bet", -150, 130))),
        _FakeAdapter("the_odds_api", _event_payload(("fanduel", -140, 120), ("draftkings", -155, 135))),
    )

    body = await _get_odds(engine, providers="espn,the_odds_api")

    assert body["eventId"] == "evt1"
    assert body["status"] == "success"
    assert body["cached"] is False
    assert body["partialFailures"] == []
    assert body["event"]["home_team"] == HOME
    assert len(body["quotes"]) == 6
    fanduel_home = next(q for q in body["quotes"] if q["bookmaker"] == "fanduel" and q["side"] == "home")
    assert fanduel_home["bookmaker_name"] == "FanDuel"
    assert fanduel_home["display_price"] == "-140"
    best = {(b["market"], b["side"]): (b["bookmaker"], b["price"]) for b in body["bestPrices"]}
    assert best[("moneyline", "home")] == ("fanduel", -140)
    assert best[("moneyline", "away")] == ("draftkings", 135)


@pytest.mark.asyncio
async def test_get_odds_bookmaker_filter_and_cache_flag():
    espn = _FakeAdapter("espn", _event_payload(("espn_bet", -150, 130), ("draftkings", -155, 135)))
    engine = _engine(espn)

    await _get_odds(engine)
    body = await _get_odds(engine, bookmakers="espn_bet")

    assert body["cached"] is True
    assert espn.calls == 1
    assert {q["bookmaker"] for q in body["quotes"]} == {"espn_bet"}
    assert all(b["bookmaker"] == "espn_bet" for b in body["bestPrices"])


@pytest.mark.asyncio
async def test_get_odds_partial_lists_failures():
    engine = _engine(
        _FakeAdapter("espn", error=TransientError("upstream status 503", status_code=503)),
        _FakeAdapter("the_odds_api", _event_payload(("fanduel", -140, 120))),
    )

    body = await _get_odds(engine, providers="espn,the_odds_api")

    assert body["status"] == "partial"
    assert body["partialFailures"][0]["provider_id"] == "espn"
    assert body["partialFailures"][0]["kind"] == "transient"


@pytest.mark.asyncio
async def test_get_odds_exhausted_is_502_with_same_shape():
    engine = _engine(
        _FakeAdapter("espn", error=TransientError("upstream status 503")),
        _FakeAdapter("the_odds_api", error=TransientError("timeout after 8000ms")),
    )

    response = await _get_odds(engine, providers="espn,the_odds_api")

    assert response.status_code == 502
    body = json.loads(response.body)
    assert body["status"] == "exhausted"
    assert body["quotes"] == []
    assert [f["reason"] for f in body["partialFailures"]] == ["upstream status 503", "timeout after 8000ms"]


@pytest.mark.asyncio
async def test_unknown_or_missing_providers_are_400():
    engine = _engine(_FakeAdapter("espn", _event_payload()))

    with pytest.raises(HTTPException) as exc_info:
        await _get_odds(engine, providers="espn,pinnacle")
    assert exc_info.value.status_code == 400

    empty = OddsEngine([], cache=AggregationCache(ttl=300))
    with pytest.raises(HTTPException) as exc_info:
        await _get_odds(empty)
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_best_price_endpoint():
    engine = _engine(_FakeAdapter("espn", _event_payload(("espn_bet", -150, 130), ("fanduel", -145, 125))))

    best = await odds_router.get_best_price(
        event="evt1",
        sport="NFL",
        market=MarketKind.moneyline,
        side=Side.home,
        line=None,
        providers=None,
        engine=engine,
    )
    assert (best.bookmaker, best.price) == ("fanduel", -145)

    with pytest.raises(HTTPException) as exc_info:
        await odds_router.get_best_price(
            event="evt1",
            sport="NFL",
            market=MarketKind.total,
            side=Side.over,
            line=None,
            providers=None,
            engine=engine,
        )
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_provider_status_cache_admin_and_health():
    engine = _engine(_FakeAdapter("espn", _event_payload(("espn_bet", -150, 130))))
    await _get_odds(engine)

    providers = await odds_router.list_providers(engine=engine)
    assert [(p.provider_id, p.display_name, p.circuit_open) for p in providers] == [("espn", "ESPN", False)]
    assert providers[0].usage == {"requests_remaining": 42}

    stats = await odds_router.cache_stats(engine=engine)
    assert stats["slots"] == 1

    assert await odds_router.clear_cache(sport="nfl", event=None, engine=engine) == {"removed": 1}

    request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(odds_engine=engine)))
    health = await main_module.health(request)
    assert health["status"] == "healthy"
    assert health["providers"] == {"espn": {"circuit_open": False}}

    metrics = await main_module.metrics()
    assert b"odds_resolve_outcomes_total" in metrics.body


@pytest.mark.asyncio
async def test_request_log_middleware_emits_json_line(caplog):
    middleware = StructuredLoggingMiddleware(app=None)
    request = Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/odds",
            "query_string": b"event=evt1&sport=NFL&apiKey=secret",
            "headers": [],
            "client": ("127.0.0.1", 5000),
        }
    )

    async def _call_next(_request):
        return Response(status_code=502)

    with caplog.at_level(logging.INFO, logger="wagerodds.http"):
        response = await middleware.dispatch(request, _call_next)

    entry = json.loads(caplog.records[-1].getMessage())
    assert entry["event"] == "http_request"
    assert entry["status"] == 502
    assert entry["params"] == {"event": "evt1", "sport": "NFL"}
    assert response.headers["X-Request-ID"] == entry["request_id"]
    assert "secret" not in caplog.text

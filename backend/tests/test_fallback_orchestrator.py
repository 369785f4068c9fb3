"""
backend/tests/test_fallback_orchestrator.py

Purpose:
    resolve_odds across providers and endpoint tiers: merge and
    first-available strategies, failure classification, deadlines and the
    exhausted / partial / success statuses.

Dependencies:
    - wagerodds.services.fallback_orchestrator
"""

from __future__ import annotations

import asyncio
import json
import logging

import httpx
import pytest

from wagerodds.models.odds import AggregationStatus, FailureKind, MarketKind, Side
from wagerodds.providers.base import (
    BaseOddsAdapter,
    Endpoint,
    EventNotFoundInProvider,
    PermanentError,
    ProviderRawPayload,
    TransientError,
    UnsupportedSportError,
)
from wagerodds.providers.espn import ESPNOddsAdapter
from wagerodds.providers.http_client import ProviderHttpClient
from wagerodds.services.aggregation_cache import AggregationCache
from wagerodds.services.best_price import best_price
from wagerodds.services.fallback_orchestrator import (
    FallbackOrchestrator,
    NoProvidersError,
    ResolveStrategy,
    UnknownProviderError,
)
from wagerodds.services.market_normalizer import MarketNormalizer


def _book(key: str, home: int, away: int) -> dict:
    return {
        "bookmakers": [
            {
                "key": key,
                "markets": [
                    {
                        "key": "h2h",
                        "outcomes": [{"name": "home", "price": home}, {"name": "away", "price": away}],
                    }
                ],
            }
        ]
    }


class _FakeAdapter(BaseOddsAdapter):
    """Scripted adapter: each endpoint tier maps to a payload, an exception or a coroutine factory."""

    circuit_open = False

    def __init__(self, provider_id: str, script: dict, tiers: tuple[str, ...] = ("primary", "fallback")):
        super().__init__(client=None)
        self.provider_id = provider_id
        self.display_name = provider_id
        self.calls: list[str] = []
        self._script = script
        self._tiers = tiers

    def resolve_sport(self, sport_code: str) -> str:
        if sport_code == "CURLING":
            raise UnsupportedSportError("no curling", provider_id=self.provider_id)
        return sport_code.lower()

    def endpoints(self, event_id: str, sport_code: str) -> list[Endpoint]:
        self.resolve_sport(sport_code)
        return [Endpoint(name=t, url=f"https://{self.provider_id}.test/{t}/{event_id}") for t in self._tiers]

    def extract(self, endpoint, data, event_id):
        return data

    async def fetch(self, event_id, sport_code, endpoint=None):
        self.calls.append(endpoint.name)
        outcome = self._script.get(endpoint.name)
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            outcome = await outcome()
        return ProviderRawPayload(
            provider_id=self.provider_id,
            event_id=event_id,
            sport_code=sport_code,
            endpoint=endpoint.name,
            data=outcome,
            price_format="american",
        )

    async def aclose(self) -> None:
        return None


def _transient(provider_id: str) -> TransientError:
    return TransientError("upstream status 503", provider_id=provider_id, status_code=503)


def _orchestrator(*adapters: _FakeAdapter, **kwargs) -> FallbackOrchestrator:
    return FallbackOrchestrator({a.provider_id: a for a in adapters}, AggregationCache(ttl=300), **kwargs)


@pytest.mark.asyncio
async def test_merge_keeps_every_provider_and_best_price_spans_them():
    espn = _FakeAdapter("espn", {"primary": _book("espn_bet", -150, 130)})
    odds_api = _FakeAdapter("the_odds_api", {"primary": _book("fanduel", -140, 120)})

    result = await _orchestrator(espn, odds_api).resolve_odds("evt1", "NFL", ["espn", "the_odds_api"])

    assert result.status == AggregationStatus.success
    assert list(result.quote_sets) == ["espn", "the_odds_api"]
    assert result.failures == []
    best_home = best_price(result.ordered_quote_sets(), MarketKind.moneyline, Side.home)
    best_away = best_price(result.ordered_quote_sets(), MarketKind.moneyline, Side.away)
    assert (best_home.provider_id, best_home.price) == ("the_odds_api", -140)
    assert (best_away.provider_id, best_away.price) == ("espn", 130)


@pytest.mark.asyncio
async def test_one_provider_down_gives_partial_with_diagnostics():
    espn = _FakeAdapter("espn", {"primary": _transient("espn"), "fallback": _transient("espn")})
    odds_api = _FakeAdapter("the_odds_api", {"primary": _book("fanduel", -140, 120)})

    result = await _orchestrator(espn, odds_api).resolve_odds("evt1", "NFL", ["espn", "the_odds_api"])

    assert result.status == AggregationStatus.partial
    assert list(result.quote_sets) == ["the_odds_api"]
    assert [(f.provider_id, f.kind) for f in result.failures] == [("espn", FailureKind.transient)]
    assert espn.calls == ["primary", "fallback"]


@pytest.mark.asyncio
async def test_not_found_falls_through_to_next_endpoint_tier():
    espn = _FakeAdapter(
        "espn",
        {
            "primary": EventNotFoundInProvider("event not found", provider_id="espn", status_code=404),
            "fallback": _book("espn_bet", -150, 130),
        },
    )

    result = await _orchestrator(espn).resolve_odds("evt1", "NFL", ["espn"])

    assert result.status == AggregationStatus.success
    assert result.quote_sets["espn"].endpoint == "fallback"
    assert espn.calls == ["primary", "fallback"]


@pytest.mark.asyncio
async def test_permanent_error_ends_provider_walk():
    odds_api = _FakeAdapter(
        "the_odds_api",
        {"primary": PermanentError("upstream rejected request with status 401", status_code=401)},
    )
    espn = _FakeAdapter("espn", {"primary": _book("espn_bet", -150, 130)})

    result = await _orchestrator(odds_api, espn).resolve_odds("evt1", "NFL", ["the_odds_api", "espn"])

    assert odds_api.calls == ["primary"]
    assert result.status == AggregationStatus.partial
    failure = result.failures[0]
    assert (failure.kind, failure.status_code, failure.retryable) == (FailureKind.permanent, 401, False)


@pytest.mark.asyncio
async def test_three_transient_failures_exhaust_with_three_reasons():
    adapters = [
        _FakeAdapter(p, {"primary": _transient(p), "fallback": _transient(p)})
        for p in ("espn", "the_odds_api", "backup")
    ]

    result = await _orchestrator(*adapters).resolve_odds("evt1", "NFL", ["espn", "the_odds_api", "backup"])

    assert result.status == AggregationStatus.exhausted
    assert result.exhausted
    assert result.quote_sets == {}
    assert [f.provider_id for f in result.failures] == ["espn", "the_odds_api", "backup"]
    assert all(f.reason == "upstream status 503" for f in result.failures)


@pytest.mark.asyncio
async def test_empty_and_rejected_payloads_count_as_no_usable_quotes(caplog):
    inconsistent = {
        "bookmakers": [
            {
                "key": "draftkings",
                "markets": [
                    {
                        "key": "spreads",
                        "outcomes": [
                            {"name": "home", "price": -110, "point": -3.5},
                            {"name": "away", "price": -110, "point": -3.5},
                        ],
                    }
                ],
            }
        ]
    }
    espn = _FakeAdapter("espn", {"primary": {"bookmakers": []}, "fallback": inconsistent})

    with caplog.at_level(logging.WARNING, logger="wagerodds.fallback_orchestrator"):
        result = await _orchestrator(espn).resolve_odds("evt1", "NFL", ["espn"])

    assert result.status == AggregationStatus.exhausted
    assert result.failures[0].kind == FailureKind.no_usable_quotes
    assert result.failures[0].endpoint == "fallback"
    logged = [json.loads(r.getMessage()) for r in caplog.records if r.getMessage().startswith("{")]
    assert any(entry["event"] == "normalization_failed" and entry["bookmaker"] == "draftkings" for entry in logged)


@pytest.mark.asyncio
async def test_unsupported_sport_is_a_failure_not_an_exception():
    espn = _FakeAdapter("espn", {"primary": _book("espn_bet", -150, 130)})

    result = await _orchestrator(espn).resolve_odds("evt1", "CURLING", ["espn"])

    assert result.exhausted
    assert result.failures[0].kind == FailureKind.unsupported_sport
    assert espn.calls == []


@pytest.mark.asyncio
async def test_first_available_stops_at_first_provider_with_quotes():
    espn = _FakeAdapter("espn", {"primary": _transient("espn"), "fallback": _transient("espn")})
    odds_api = _FakeAdapter("the_odds_api", {"primary": _book("fanduel", -140, 120)})
    backup = _FakeAdapter("backup", {"primary": _book("betmgm", -145, 125)})

    result = await _orchestrator(espn, odds_api, backup).resolve_odds(
        "evt1", "NFL", ["espn", "the_odds_api", "backup"], strategy=ResolveStrategy.first_available
    )

    assert result.status == AggregationStatus.partial
    assert list(result.quote_sets) == ["the_odds_api"]
    assert backup.calls == []


@pytest.mark.asyncio
async def test_deadline_returns_what_arrived_in_time():
    async def _never():
        await asyncio.sleep(10)

    espn = _FakeAdapter("espn", {"primary": _book("espn_bet", -150, 130)})
    slow = _FakeAdapter("the_odds_api", {"primary": _never})

    result = await _orchestrator(espn, slow).resolve_odds("evt1", "NFL", ["espn", "the_odds_api"], deadline=0.05)

    assert result.status == AggregationStatus.partial
    assert result.failures[0].provider_id == "the_odds_api"
    assert result.failures[0].kind == FailureKind.timeout


@pytest.mark.asyncio
async def test_second_resolve_is_served_from_cache():
    espn = _FakeAdapter("espn", {"primary": _book("espn_bet", -150, 130)})
    orchestrator = _orchestrator(espn)

    first = await orchestrator.resolve_odds("evt1", "NFL", ["espn"])
    second = await orchestrator.resolve_odds("evt1", "NFL", ["espn"])

    assert not first.cached
    assert second.cached
    assert espn.calls == ["primary"]


@pytest.mark.asyncio
async def test_caller_mistakes_raise():
    orchestrator = _orchestrator(_FakeAdapter("espn", {}))

    with pytest.raises(UnknownProviderError):
        await orchestrator.resolve_odds("evt1", "NFL", ["espn", "nope"])
    with pytest.raises(NoProvidersError):
        await orchestrator.resolve_odds("evt1", "NFL", [])


@pytest.mark.asyncio
async def test_merge_unions_markets_across_providers():
    moneyline_only = _book("espn_bet", -150, 130)
    lines_only = {
        "bookmakers": [
            {
                "key": "fanduel",
                "markets": [
                    {
                        "key": "spreads",
                        "outcomes": [
                            {"name": "home", "price": -110, "point": -3.5},
                            {"name": "away", "price": -110, "point": 3.5},
                        ],
                    },
                    {
                        "key": "totals",
                        "outcomes": [
                            {"name": "Over", "price": -105, "point": 47.5},
                            {"name": "Under", "price": -115, "point": 47.5},
                        ],
                    },
                ],
            }
        ]
    }
    espn = _FakeAdapter("espn", {"primary": moneyline_only})
    odds_api = _FakeAdapter("the_odds_api", {"primary": lines_only})

    result = await _orchestrator(espn, odds_api).resolve_odds("evt1", "NFL", ["espn", "the_odds_api"])

    assert result.markets() == {MarketKind.moneyline, MarketKind.spread, MarketKind.total}
    assert len(result.all_quotes()) == 6


class _CrashingNormalizer(MarketNormalizer):
    """Blows up on one provider's payloads the way a shape bug would."""

    def __init__(self, provider_id: str):
        self._provider_id = provider_id

    def normalize(self, payload, provider_id, event_id, observed_at):
        if provider_id == self._provider_id:
            raise AttributeError("'int' object has no attribute 'get'")
        return super().normalize(payload, provider_id, event_id, observed_at)


@pytest.mark.asyncio
async def test_redirect_loop_is_a_provider_failure_not_an_exception():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.TooManyRedirects("loop", request=request)

    espn = ESPNOddsAdapter(ProviderHttpClient("espn", transport=httpx.MockTransport(handler)))
    good = _FakeAdapter("good", {"primary": _book("fanduel", -140, 120)})

    result = await _orchestrator(good, espn).resolve_odds("1", "NFL", ["good", "espn"])

    assert result.status == AggregationStatus.partial
    assert list(result.quote_sets) == ["good"]
    failure = result.failures[0]
    assert (failure.provider_id, failure.kind) == ("espn", FailureKind.transient)
    assert failure.reason == "request error: TooManyRedirects"
    await espn.aclose()


@pytest.mark.asyncio
async def test_stray_adapter_exception_only_fails_that_provider(caplog):
    broken = _FakeAdapter("broken", {"primary": RuntimeError("adapter bug")})
    good = _FakeAdapter("good", {"primary": _book("fanduel", -140, 120)})

    with caplog.at_level(logging.ERROR, logger="wagerodds.aggregation_cache"):
        result = await _orchestrator(good, broken).resolve_odds("1", "NFL", ["good", "broken"])

    assert result.status == AggregationStatus.partial
    assert list(result.quote_sets) == ["good"]
    assert [(f.provider_id, f.kind, f.reason) for f in result.failures] == [
        ("broken", FailureKind.transient, "unexpected error: RuntimeError")
    ]
    assert any("provider=broken" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_normalizer_crash_counts_as_no_usable_quotes(caplog):
    espn = _FakeAdapter("espn", {"primary": _book("espn_bet", -150, 130)}, tiers=("primary",))
    good = _FakeAdapter("good", {"primary": _book("fanduel", -140, 120)})
    orchestrator = _orchestrator(good, espn, normalizer=_CrashingNormalizer("espn"))

    with caplog.at_level(logging.WARNING, logger="wagerodds.fallback_orchestrator"):
        result = await orchestrator.resolve_odds("1", "NFL", ["good", "espn"])

    assert result.status == AggregationStatus.partial
    assert list(result.quote_sets) == ["good"]
    failure = result.failures[0]
    assert (failure.provider_id, failure.kind, failure.endpoint) == ("espn", FailureKind.no_usable_quotes, "primary")
    assert failure.reason.startswith("payload rejected: malformed payload (AttributeError")
    logged = [json.loads(r.getMessage()) for r in caplog.records if r.getMessage().startswith("{")]
    assert any(entry["event"] == "normalization_failed" and entry["provider"] == "espn" for entry in logged)


@pytest.mark.asyncio
async def test_epoch_last_update_alongside_healthy_provider():
    payload = _book("fanduel", -150, 130)
    payload["bookmakers"][0]["last_update"] = 1700000000
    epoch = _FakeAdapter("the_odds_api", {"primary": payload})
    good = _FakeAdapter("good", {"primary": _book("draftkings", -140, 120)})

    result = await _orchestrator(good, epoch).resolve_odds("1", "NFL", ["good", "the_odds_api"])

    assert result.status == AggregationStatus.success
    assert result.quote_sets["the_odds_api"].quotes[0].observed_at.year == 2023

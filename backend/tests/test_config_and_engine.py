"""
backend/tests/test_config_and_engine.py

Purpose:
    Settings parsing (csv lists, per-sport provider priority) and the odds
    engine built from settings: registered adapters, default providers and
    provider resolution order.

Dependencies:
    - wagerodds.config
    - wagerodds.services.odds_engine
"""

from __future__ import annotations

import pytest

from wagerodds.config import Settings
from wagerodds.services.fallback_orchestrator import NoProvidersError, UnknownProviderError
from wagerodds.services.odds_engine import OddsEngine


def _settings(monkeypatch, **env) -> Settings:
    for key in ("THEODDSAPI_API_KEY", "ODDS_PROVIDER_PRIORITY", "ODDS_DEFAULT_PROVIDERS"):
        monkeypatch.delenv(key, raising=False)
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return Settings(_env_file=None)


def test_settings_helpers(monkeypatch):
    settings = _settings(
        monkeypatch,
        ODDS_PROVIDER_PRIORITY='{"NFL": ["the_odds_api", "espn"], "EPL": ["the_odds_api"]}',
        ODDS_DEFAULT_PROVIDERS="espn",
        ODDS_DEFAULT_MARKETS="h2h, totals",
        THEODDSAPI_BOOKMAKERS="fanduel,draftkings",
    )

    assert settings.ODDS_PROVIDER_PRIORITY == {"NFL": ["the_odds_api", "espn"], "EPL": ["the_odds_api"]}
    assert settings.ODDS_DEFAULT_PROVIDERS == "espn"
    assert settings.default_markets() == ["h2h", "totals"]
    assert settings.default_bookmakers() == ["fanduel", "draftkings"]
    assert settings.ODDS_CACHE_TTL_SECONDS == 300


@pytest.mark.asyncio
async def test_engine_from_settings_without_api_key(monkeypatch):
    engine = OddsEngine.from_settings(_settings(monkeypatch))

    assert list(engine.adapters) == ["espn", "the_odds_api"]
    assert engine.resolve_providers("NFL") == ["espn"]
    assert engine.cache.ttl == 300
    await engine.aclose()


@pytest.mark.asyncio
async def test_engine_provider_resolution_order(monkeypatch):
    engine = OddsEngine.from_settings(
        _settings(
            monkeypatch,
            THEODDSAPI_API_KEY="k3y",
            ODDS_PROVIDER_PRIORITY='{"EPL": ["the_odds_api"]}',
        )
    )

    assert engine.resolve_providers("NFL") == ["espn", "the_odds_api"]
    assert engine.resolve_providers("epl") == ["the_odds_api"]
    assert engine.resolve_providers("EPL", ["espn", " espn "]) == ["espn"]
    with pytest.raises(UnknownProviderError):
        engine.resolve_providers("NFL", ["pinnacle"])
    await engine.aclose()


def test_engine_without_adapters_has_no_providers():
    with pytest.raises(NoProvidersError):
        OddsEngine([]).resolve_providers("NFL")

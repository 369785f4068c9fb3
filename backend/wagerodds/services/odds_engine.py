"""
backend/wagerodds/services/odds_engine.py

Purpose:
    Composition root for the odds service: owns the provider adapters, the
    aggregation cache and the orchestrator, and answers "which providers for
    this sport". One instance lives on ``app.state.odds_engine``.

Dependencies:
    - wagerodds.config
    - wagerodds.providers
    - wagerodds.services.fallback_orchestrator
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from wagerodds.config import Settings
from wagerodds.models.odds import AggregationResult, ProviderStatusResponse
from wagerodds.providers.base import BaseOddsAdapter
from wagerodds.providers.espn import ESPNOddsAdapter
from wagerodds.providers.http_client import ProviderHttpClient
from wagerodds.providers.odds_api import TheOddsAPIAdapter
from wagerodds.services.aggregation_cache import AggregationCache
from wagerodds.services.fallback_orchestrator import (
    FallbackOrchestrator,
    NoProvidersError,
    ResolveStrategy,
    UnknownProviderError,
)
from wagerodds.services.market_normalizer import MarketNormalizer

logger = logging.getLogger("wagerodds.odds_engine")


class OddsEngine:
    def __init__(
        self,
        adapters: list[BaseOddsAdapter],
        cache: Optional[AggregationCache] = None,
        normalizer: Optional[MarketNormalizer] = None,
        provider_priority: Optional[dict[str, list[str]]] = None,
        default_providers: Optional[list[str]] = None,
        timeout: Optional[float] = None,
        strategy: Union[ResolveStrategy, str] = ResolveStrategy.merge,
    ):
        self.adapters: dict[str, BaseOddsAdapter] = {a.provider_id: a for a in adapters}
        self.cache = cache or AggregationCache()
        self._provider_priority = {
            k.strip().lower(): list(v) for k, v in (provider_priority or {}).items()
        }
        self._default_providers = list(default_providers or self.adapters)
        self.orchestrator = FallbackOrchestrator(
            self.adapters,
            self.cache,
            normalizer=normalizer,
            default_timeout=timeout,
            default_strategy=strategy,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "OddsEngine":
        def client(name: str) -> ProviderHttpClient:
            return ProviderHttpClient(
                name,
                timeout=settings.ODDS_REQUEST_TIMEOUT_SECONDS,
                failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
                recovery_timeout=settings.CIRCUIT_BREAKER_RECOVERY_SECONDS,
            )

        adapters: list[BaseOddsAdapter] = [
            ESPNOddsAdapter(
                client("espn"),
                site_base_url=settings.ESPN_SITE_BASE_URL,
                core_base_url=settings.ESPN_CORE_BASE_URL,
            ),
            TheOddsAPIAdapter(
                client("the_odds_api"),
                api_key=settings.THEODDSAPI_API_KEY,
                base_url=settings.THEODDSAPI_BASE_URL,
                regions=settings.THEODDSAPI_REGIONS,
                markets=settings.default_markets(),
                odds_format=settings.THEODDSAPI_ODDS_FORMAT,
                bookmakers=settings.default_bookmakers(),
            ),
        ]

        defaults = [p.strip() for p in settings.ODDS_DEFAULT_PROVIDERS.split(",") if p.strip()]
        if not defaults:
            defaults = ["espn"]
            if settings.THEODDSAPI_API_KEY:
                defaults.append("the_odds_api")

        logger.info(
            "Odds engine configured: providers=%s defaults=%s ttl=%ss strategy=%s",
            [a.provider_id for a in adapters],
            defaults,
            settings.ODDS_CACHE_TTL_SECONDS,
            settings.ODDS_RESOLVE_STRATEGY,
        )
        return cls(
            adapters,
            cache=AggregationCache(
                ttl=settings.ODDS_CACHE_TTL_SECONDS,
                failure_ttl=settings.ODDS_FAILURE_CACHE_TTL_SECONDS,
            ),
            provider_priority=settings.ODDS_PROVIDER_PRIORITY,
            default_providers=defaults,
            timeout=settings.ODDS_REQUEST_DEADLINE_SECONDS,
            strategy=settings.ODDS_RESOLVE_STRATEGY,
        )

    def resolve_providers(self, sport_code: str, requested: Optional[list[str]] = None) -> list[str]:
        """Explicit request wins, then per-sport priority, then the defaults."""
        if requested:
            providers = list(dict.fromkeys(p.strip() for p in requested if p and p.strip()))
        else:
            providers = self._provider_priority.get((sport_code or "").strip().lower()) or self._default_providers
        if not providers:
            raise NoProvidersError(f"no odds providers configured for {sport_code}")
        unknown = [p for p in providers if p not in self.adapters]
        if unknown:
            raise UnknownProviderError(unknown)
        return list(providers)

    async def resolve(
        self,
        event_id: str,
        sport_code: str,
        providers: Optional[list[str]] = None,
        strategy: Union[ResolveStrategy, str, None] = None,
        deadline: Optional[float] = None,
    ) -> AggregationResult:
        return await self.orchestrator.resolve_odds(
            event_id,
            sport_code,
            self.resolve_providers(sport_code, providers),
            deadline=deadline,
            strategy=strategy,
        )

    def provider_status(self) -> list[ProviderStatusResponse]:
        return [
            ProviderStatusResponse(
                provider_id=adapter.provider_id,
                display_name=adapter.display_name,
                circuit_open=adapter.circuit_open,
                usage=adapter.usage(),
            )
            for adapter in self.adapters.values()
        ]

    async def aclose(self) -> None:
        for adapter in self.adapters.values():
            await adapter.aclose()

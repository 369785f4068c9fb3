"""
backend/wagerodds/services/fallback_orchestrator.py

Purpose:
    Resolve odds for one event across an ordered list of providers. Each
    provider walks its own endpoint tiers; upstream and normalization errors
    are turned into ProviderFailure records here and never escape as
    exceptions. Results are always an AggregationResult with status
    success / partial / exhausted.

    Strategies:
        merge            all providers fetched concurrently, every quote set kept
        first_available  providers tried in priority order, stop at the first
                         one that yields quotes

Dependencies:
    - wagerodds.services.aggregation_cache
    - wagerodds.services.market_normalizer
    - wagerodds.monitoring.odds_metrics
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from functools import partial
from typing import Optional, Union

from wagerodds.models.odds import (
    AggregationResult,
    AggregationStatus,
    FailureKind,
    ProviderFailure,
    QuoteSet,
)
from wagerodds.monitoring.odds_metrics import (
    METRIC_NORMALIZATION_FAILURES,
    METRIC_RESOLVE_LATENCY,
    METRIC_RESOLVE_OUTCOMES,
    observe_latency,
)
from wagerodds.providers.base import (
    BaseOddsAdapter,
    EventNotFoundInProvider,
    FetchError,
    OddsError,
    ProviderRawPayload,
    TransientError,
)
from wagerodds.services.aggregation_cache import AggregationCache, NoDataError
from wagerodds.services.market_normalizer import MarketNormalizer, NormalizationError
from wagerodds.utils import utcnow

logger = logging.getLogger("wagerodds.fallback_orchestrator")


class ResolveStrategy(str, Enum):
    merge = "merge"
    first_available = "first_available"


class EndpointWalk(str, Enum):
    """Per-provider progress through its endpoint tiers."""

    not_started = "not_started"
    trying = "trying"
    success = "success"
    try_next = "try_next"
    exhausted = "exhausted"


class UnknownProviderError(OddsError):
    """A requested provider id has no registered adapter."""

    def __init__(self, provider_ids: list[str]):
        super().__init__(f"unknown provider(s): {', '.join(provider_ids)}")
        self.provider_ids = provider_ids


class NoProvidersError(OddsError):
    """Nothing to resolve against: no providers requested or configured."""


class FallbackOrchestrator:
    def __init__(
        self,
        adapters: dict[str, BaseOddsAdapter],
        cache: AggregationCache,
        normalizer: Optional[MarketNormalizer] = None,
        default_timeout: Optional[float] = None,
        default_strategy: Union[ResolveStrategy, str] = ResolveStrategy.merge,
    ):
        self._adapters = adapters
        self._cache = cache
        self._normalizer = normalizer or MarketNormalizer()
        self._default_timeout = default_timeout
        self._default_strategy = ResolveStrategy(default_strategy)

    async def resolve_odds(
        self,
        event_id: str,
        sport_code: str,
        preferred_providers: list[str],
        deadline: Optional[float] = None,
        strategy: Union[ResolveStrategy, str, None] = None,
    ) -> AggregationResult:
        """Aggregate quotes for an event from ``preferred_providers`` (priority order).

        ``deadline`` is a time budget in seconds for the whole call. Providers
        that have not answered when it runs out are reported as ``timeout``
        failures and whatever arrived in time is returned.

        Raises NoProvidersError / UnknownProviderError for caller mistakes
        only; upstream trouble is always reported inside the result.
        """
        providers = list(dict.fromkeys(p.strip() for p in preferred_providers if p and p.strip()))
        if not providers:
            raise NoProvidersError(f"no providers to resolve {sport_code}/{event_id} against")
        unknown = [p for p in providers if p not in self._adapters]
        if unknown:
            raise UnknownProviderError(unknown)

        strategy = ResolveStrategy(strategy) if strategy else self._default_strategy
        budget = self._default_timeout if deadline is None else deadline

        with observe_latency(METRIC_RESOLVE_LATENCY):
            if strategy == ResolveStrategy.first_available:
                result = await self._first_available(event_id, sport_code, providers, budget)
            else:
                result = await self._merge(event_id, sport_code, providers, budget)

        METRIC_RESOLVE_OUTCOMES.labels(status=result.status.value).inc()
        logger.info(
            json.dumps(
                {
                    "event": "odds_resolved",
                    "event_id": event_id,
                    "sport": sport_code,
                    "strategy": strategy.value,
                    "status": result.status.value,
                    "providers": providers,
                    "succeeded": list(result.quote_sets),
                    "failed": [f.provider_id for f in result.failures],
                    "cached": result.cached,
                }
            )
        )
        return result

    async def _merge(
        self,
        event_id: str,
        sport_code: str,
        providers: list[str],
        budget: Optional[float],
    ) -> AggregationResult:
        fetch = partial(self._fetch_provider, event_id, sport_code)
        try:
            lookup = await self._cache.get_or_fetch(event_id, sport_code, providers, fetch, timeout=budget)
        except NoDataError as exc:
            return AggregationResult(
                event_id=event_id,
                sport_code=sport_code,
                status=AggregationStatus.exhausted,
                providers=providers,
                failures=exc.failures,
            )
        return AggregationResult(
            event_id=event_id,
            sport_code=sport_code,
            status=AggregationStatus.partial if lookup.failures else AggregationStatus.success,
            providers=providers,
            quote_sets=lookup.quote_sets,
            failures=lookup.failures,
            cached=lookup.cached,
        )

    async def _first_available(
        self,
        event_id: str,
        sport_code: str,
        providers: list[str],
        budget: Optional[float],
    ) -> AggregationResult:
        loop = asyncio.get_running_loop()
        expires = None if budget is None else loop.time() + budget
        fetch = partial(self._fetch_provider, event_id, sport_code)
        failures: list[ProviderFailure] = []
        fetched_any = False

        for index, provider_id in enumerate(providers):
            remaining = None if expires is None else expires - loop.time()
            if remaining is not None and remaining <= 0:
                failures.extend(
                    ProviderFailure(
                        provider_id=p,
                        kind=FailureKind.timeout,
                        reason="deadline exhausted before provider was tried",
                    )
                    for p in providers[index:]
                )
                break
            try:
                lookup = await self._cache.get_or_fetch(
                    event_id, sport_code, [provider_id], fetch, timeout=remaining
                )
            except NoDataError as exc:
                failures.extend(exc.failures)
                fetched_any = True
                continue
            fetched_any = fetched_any or not lookup.cached
            return AggregationResult(
                event_id=event_id,
                sport_code=sport_code,
                status=AggregationStatus.partial if failures else AggregationStatus.success,
                providers=providers,
                quote_sets=lookup.quote_sets,
                failures=failures,
                cached=not fetched_any,
            )

        return AggregationResult(
            event_id=event_id,
            sport_code=sport_code,
            status=AggregationStatus.exhausted,
            providers=providers,
            failures=failures,
        )

    async def _fetch_provider(
        self, event_id: str, sport_code: str, provider_id: str
    ) -> Union[QuoteSet, ProviderFailure]:
        """Walk one provider's endpoint tiers until one yields quotes.

        Transient errors, 404s and payloads with no usable quotes move on to
        the next tier; any other permanent error ends the walk.
        """
        adapter = self._adapters[provider_id]
        state = EndpointWalk.not_started
        try:
            endpoints = adapter.endpoints(event_id, sport_code)
        except FetchError as exc:
            self._log_walk(provider_id, event_id, EndpointWalk.exhausted, None, exc.message)
            return exc.to_failure(provider_id)

        failure: Optional[ProviderFailure] = None
        for endpoint in endpoints:
            state = EndpointWalk.trying
            try:
                raw = await adapter.fetch(event_id, sport_code, endpoint)
                quote_set = self._normalize(raw, provider_id, event_id, sport_code)
            except (TransientError, EventNotFoundInProvider) as exc:
                failure = exc.to_failure(provider_id)
                state = EndpointWalk.try_next
                self._log_walk(provider_id, event_id, state, endpoint.name, exc.message)
                continue
            except FetchError as exc:
                state = EndpointWalk.exhausted
                self._log_walk(provider_id, event_id, state, endpoint.name, exc.message)
                return exc.to_failure(provider_id)
            except NormalizationError as exc:
                failure = ProviderFailure(
                    provider_id=provider_id,
                    kind=FailureKind.no_usable_quotes,
                    reason=f"payload rejected: {exc.message}",
                    endpoint=endpoint.name,
                    retryable=False,
                )
                state = EndpointWalk.try_next
                continue

            if quote_set.quotes:
                state = EndpointWalk.success
                self._log_walk(provider_id, event_id, state, endpoint.name, None)
                return quote_set
            failure = ProviderFailure(
                provider_id=provider_id,
                kind=FailureKind.no_usable_quotes,
                reason="response carried no usable quotes",
                endpoint=endpoint.name,
                retryable=False,
            )
            state = EndpointWalk.try_next
            self._log_walk(provider_id, event_id, state, endpoint.name, failure.reason)

        state = EndpointWalk.exhausted
        self._log_walk(provider_id, event_id, state, None, failure.reason if failure else "no endpoints")
        return failure or ProviderFailure(
            provider_id=provider_id,
            kind=FailureKind.permanent,
            reason="provider exposes no endpoints for this event",
            retryable=False,
        )

    def _normalize(
        self, raw: ProviderRawPayload, provider_id: str, event_id: str, sport_code: str
    ) -> QuoteSet:
        observed_at = utcnow()
        try:
            quotes = self._normalizer.normalize(raw, provider_id, event_id, observed_at)
            event = self._normalizer.extract_event(raw, event_id, sport_code)
        except NormalizationError as exc:
            self._log_normalization_failure(provider_id, event_id, raw.endpoint, exc.bookmaker, exc.message)
            raise
        except Exception as exc:
            message = f"malformed payload ({type(exc).__name__}: {exc})"
            self._log_normalization_failure(provider_id, event_id, raw.endpoint, None, message)
            raise NormalizationError(message, provider_id=provider_id) from exc
        return QuoteSet(
            provider_id=provider_id,
            event_id=event_id,
            fetched_at=observed_at,
            endpoint=raw.endpoint,
            quotes=tuple(quotes),
            event=event,
        )

    @staticmethod
    def _log_normalization_failure(
        provider_id: str,
        event_id: str,
        endpoint: str,
        bookmaker: Optional[str],
        error: str,
    ) -> None:
        METRIC_NORMALIZATION_FAILURES.labels(provider=provider_id).inc()
        logger.warning(
            json.dumps(
                {
                    "event": "normalization_failed",
                    "provider": provider_id,
                    "event_id": event_id,
                    "endpoint": endpoint,
                    "bookmaker": bookmaker,
                    "error": error,
                }
            )
        )

    @staticmethod
    def _log_walk(
        provider_id: str,
        event_id: str,
        state: EndpointWalk,
        endpoint: Optional[str],
        detail: Optional[str],
    ) -> None:
        level = logging.DEBUG if state == EndpointWalk.success else logging.INFO
        logger.log(
            level,
            "provider=%s event=%s endpoint=%s state=%s %s",
            provider_id,
            event_id,
            endpoint or "-",
            state.value,
            detail or "",
        )

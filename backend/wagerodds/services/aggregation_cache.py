"""
backend/wagerodds/services/aggregation_cache.py

Purpose:
    Short-TTL cache of normalized quote sets keyed by (sport, event), one slot
    per provider, with single-flight de-duplication: concurrent callers that
    need the same (key, provider) share one in-flight fetch task.

Dependencies:
    - asyncio
    - wagerodds.models.odds
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union

from wagerodds.models.odds import FailureKind, ProviderFailure, QuoteSet
from wagerodds.monitoring.odds_metrics import METRIC_CACHE_LOOKUPS
from wagerodds.providers.base import OddsError

logger = logging.getLogger("wagerodds.aggregation_cache")

CacheKey = tuple[str, str]  # (sport_code, event_id)
SlotValue = Union[QuoteSet, ProviderFailure]
ProviderFetch = Callable[[str], Awaitable[SlotValue]]


class AggregationError(OddsError):
    """Aggregation produced no usable result; ``failures`` lists why, per provider."""

    def __init__(self, message: str, failures: Optional[list[ProviderFailure]] = None):
        super().__init__(message)
        self.message = message
        self.failures = list(failures or [])


class NoDataError(AggregationError):
    """Every requested provider failed; there are no quotes at all."""


@dataclass
class CacheEntry:
    value: SlotValue
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


@dataclass
class CacheLookup:
    """Per-provider outcome of one get_or_fetch call, in request order."""

    quote_sets: dict[str, QuoteSet] = field(default_factory=dict)
    failures: list[ProviderFailure] = field(default_factory=list)
    hits: int = 0
    fetched: int = 0

    @property
    def cached(self) -> bool:
        return self.fetched == 0


@dataclass
class _Flight:
    task: asyncio.Task
    waiters: int = 0


class AggregationCache:
    """Lazily-expiring per-(key, provider) cache with shared in-flight fetches.

    Successful quote sets live for ``ttl`` seconds; provider failures are
    remembered for ``failure_ttl`` so a burst of requests for an event a
    provider doesn't carry does not hammer that provider.
    """

    def __init__(
        self,
        ttl: float = 300,
        failure_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.failure_ttl = ttl if failure_ttl is None else failure_ttl
        self._clock = clock
        self._entries: dict[CacheKey, dict[str, CacheEntry]] = {}
        self._flights: dict[tuple[CacheKey, str], _Flight] = {}
        self._hits = 0
        self._misses = 0

    @staticmethod
    def key(sport_code: str, event_id: str) -> CacheKey:
        return ((sport_code or "").strip().lower(), str(event_id).strip())

    def peek(self, sport_code: str, event_id: str, provider_id: str) -> Optional[SlotValue]:
        """Fresh cached value for one provider slot, without fetching."""
        entry = self._entries.get(self.key(sport_code, event_id), {}).get(provider_id)
        if entry is None or not entry.is_fresh(self._clock()):
            return None
        return entry.value

    async def get_or_fetch(
        self,
        event_id: str,
        sport_code: str,
        provider_ids: list[str],
        fetch: ProviderFetch,
        timeout: Optional[float] = None,
    ) -> CacheLookup:
        """Return quote sets for ``provider_ids``, fetching only stale/missing slots.

        ``timeout`` is the caller's deadline in seconds. When it runs out,
        providers still in flight are reported as ``timeout`` failures; their
        tasks keep running for other waiters and are cancelled once nobody
        waits on them any more.

        Raises NoDataError when no provider yields a quote set.
        """
        key = self.key(sport_code, event_id)
        wanted = list(dict.fromkeys(provider_ids))
        now = self._clock()
        slots = self._entries.get(key, {})

        outcome: dict[str, SlotValue] = {}
        pending: dict[str, _Flight] = {}
        lookup = CacheLookup()

        for provider_id in wanted:
            entry = slots.get(provider_id)
            if entry is not None and entry.is_fresh(now):
                outcome[provider_id] = entry.value
                lookup.hits += 1
                self._hits += 1
                METRIC_CACHE_LOOKUPS.labels(result="hit").inc()
                continue
            self._misses += 1
            METRIC_CACHE_LOOKUPS.labels(result="miss").inc()
            flight = self._flights.get((key, provider_id))
            if flight is None:
                flight = _Flight(task=asyncio.create_task(self._run(key, provider_id, fetch)))
                self._flights[(key, provider_id)] = flight
            flight.waiters += 1
            pending[provider_id] = flight

        if pending:
            lookup.fetched = len(pending)
            try:
                await asyncio.wait({f.task for f in pending.values()}, timeout=timeout)
            except asyncio.CancelledError:
                for provider_id, flight in pending.items():
                    self._release(key, provider_id, flight)
                raise

            for provider_id, flight in pending.items():
                task = flight.task
                if task.done() and not task.cancelled():
                    flight.waiters -= 1
                    exc = task.exception()
                    if exc is not None:
                        logger.error(
                            "Fetch for %s/%s provider=%s raised %s",
                            key[0],
                            key[1],
                            provider_id,
                            type(exc).__name__,
                            exc_info=exc,
                        )
                        outcome[provider_id] = ProviderFailure(
                            provider_id=provider_id,
                            kind=FailureKind.transient,
                            reason=f"unexpected error: {type(exc).__name__}",
                            retryable=True,
                        )
                        continue
                    outcome[provider_id] = task.result()
                else:
                    self._release(key, provider_id, flight)
                    outcome[provider_id] = ProviderFailure(
                        provider_id=provider_id,
                        kind=FailureKind.timeout,
                        reason=f"no response within {timeout:g}s deadline" if timeout is not None else "cancelled",
                        retryable=True,
                    )

        for provider_id in wanted:
            value = outcome.get(provider_id)
            if isinstance(value, QuoteSet):
                lookup.quote_sets[provider_id] = value
            elif value is not None:
                lookup.failures.append(value)

        if not lookup.quote_sets:
            raise NoDataError(
                f"no provider returned odds for {key[0]}/{key[1]}",
                failures=lookup.failures,
            )
        return lookup

    def _release(self, key: CacheKey, provider_id: str, flight: _Flight) -> None:
        flight.waiters -= 1
        if flight.waiters <= 0 and not flight.task.done():
            flight.task.cancel()
            if self._flights.get((key, provider_id)) is flight:
                del self._flights[(key, provider_id)]
            logger.info("Cancelled abandoned fetch for %s/%s provider=%s", key[0], key[1], provider_id)

    async def _run(self, key: CacheKey, provider_id: str, fetch: ProviderFetch) -> SlotValue:
        try:
            value = await fetch(provider_id)
            self._store(key, provider_id, value)
            return value
        finally:
            flight = self._flights.get((key, provider_id))
            if flight is not None and flight.task is asyncio.current_task():
                del self._flights[(key, provider_id)]

    def _store(self, key: CacheKey, provider_id: str, value: SlotValue) -> None:
        now = self._clock()
        ttl = self.ttl if isinstance(value, QuoteSet) else self.failure_ttl
        self._entries.setdefault(key, {})[provider_id] = CacheEntry(value=value, expires_at=now + ttl)
        self._cleanup(now)

    def _cleanup(self, now: float) -> None:
        """Drop slots long past expiry so the map cannot grow without bound."""
        horizon = self.ttl * 10
        for key in list(self._entries):
            slots = self._entries[key]
            for provider_id in [p for p, e in slots.items() if now - e.expires_at > horizon]:
                del slots[provider_id]
            if not slots:
                del self._entries[key]

    def invalidate(self, sport_code: Optional[str] = None, event_id: Optional[str] = None) -> int:
        """Drop cached slots; filters narrow the scope. Returns slots removed."""
        sport = (sport_code or "").strip().lower() or None
        event = str(event_id).strip() if event_id is not None else None
        removed = 0
        for key in list(self._entries):
            if sport is not None and key[0] != sport:
                continue
            if event is not None and key[1] != event:
                continue
            removed += len(self._entries.pop(key))
        return removed

    def stats(self) -> dict[str, int]:
        now = self._clock()
        slots = [e for entries in self._entries.values() for e in entries.values()]
        return {
            "keys": len(self._entries),
            "slots": len(slots),
            "fresh_slots": sum(1 for e in slots if e.is_fresh(now)),
            "in_flight": len(self._flights),
            "hits": self._hits,
            "misses": self._misses,
        }

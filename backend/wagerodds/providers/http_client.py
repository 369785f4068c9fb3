import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import httpx

from wagerodds.monitoring.odds_metrics import METRIC_UPSTREAM_LATENCY, METRIC_UPSTREAM_REQUESTS
from wagerodds.providers.base import (
    EventNotFoundInProvider,
    InvalidPayloadError,
    PermanentError,
    TransientError,
)

logger = logging.getLogger("wagerodds.http_client")

# Statuses that mean "try someone else", not "your request is wrong"
_TRANSIENT_STATUSES = {408, 425, 429}

_DEFAULT_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "WagerLoop/1.0",
}


class CircuitBreaker:
    """Simple circuit breaker for external API calls."""

    def __init__(
        self,
        failure_threshold: int = 3,
        recovery_timeout: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.is_open = False
        self._clock = clock

    def record_success(self) -> None:
        self.failure_count = 0
        self.is_open = False

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.failure_count >= self.failure_threshold:
            self.is_open = True
            logger.warning(
                "Circuit breaker OPEN after %d failures", self.failure_count
            )

    def can_attempt(self) -> bool:
        if not self.is_open:
            return True
        # Allow retry after recovery timeout (half-open)
        if self.last_failure_time and (
            self._clock() - self.last_failure_time > self.recovery_timeout
        ):
            logger.info("Circuit breaker half-open, allowing retry")
            return True
        return False


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    """Extract wait time from Retry-After or X-RateLimit-Retry-After headers."""
    for header in ("retry-after", "x-ratelimit-retry-after"):
        value = response.headers.get(header)
        if value is None:
            continue
        try:
            return float(value)
        except (ValueError, TypeError):
            continue
    return None


def _safe_url(url: str) -> str:
    """Strip query params (may contain API keys) for safe logging."""
    parsed = urlparse(str(url))
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path}"


@dataclass
class JsonResponse:
    data: Any
    status_code: int
    byte_size: int
    headers: dict[str, str] = field(default_factory=dict)


class ProviderHttpClient:
    """httpx.AsyncClient wrapper: one attempt per call, typed errors, circuit breaker.

    No retries against the same upstream; the orchestrator moves
    on to the next endpoint or provider instead.
    """

    def __init__(
        self,
        name: str,
        timeout: float = 8.0,
        failure_threshold: int = 3,
        recovery_timeout: int = 300,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers=_DEFAULT_HEADERS,
            follow_redirects=True,
            transport=transport,
        )
        self._name = name
        self.circuit = CircuitBreaker(failure_threshold, recovery_timeout)

    @property
    def name(self) -> str:
        return self._name

    def _log_call(
        self,
        endpoint: str,
        url: str,
        status: Optional[int],
        latency_ms: float,
        byte_size: int,
        error: Optional[str] = None,
    ) -> None:
        log_data = {
            "event": "upstream_call",
            "provider": self._name,
            "endpoint": endpoint,
            "url": _safe_url(url),
            "status": status,
            "latency_ms": latency_ms,
            "bytes": byte_size,
        }
        if error:
            log_data["error"] = error
        ok = status is not None and 200 <= status < 300
        logger.log(logging.INFO if ok else logging.WARNING, json.dumps(log_data))

    async def get_json(
        self,
        endpoint: str,
        url: str,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> JsonResponse:
        """GET ``url`` and decode JSON, translating every failure into a FetchError."""
        if not self.circuit.can_attempt():
            METRIC_UPSTREAM_REQUESTS.labels(provider=self._name, outcome="circuit_open").inc()
            raise TransientError(
                f"circuit open for {self._name}",
                provider_id=self._name,
                endpoint=endpoint,
            )

        start = time.perf_counter()
        try:
            resp = await self._client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            latency_ms = round((time.perf_counter() - start) * 1000, 2)
            self.circuit.record_failure()
            self._log_call(endpoint, url, None, latency_ms, 0, error="timeout")
            METRIC_UPSTREAM_REQUESTS.labels(provider=self._name, outcome="timeout").inc()
            raise TransientError(
                f"timeout after {latency_ms}ms", provider_id=self._name, endpoint=endpoint
            ) from exc
        except httpx.TransportError as exc:
            latency_ms = round((time.perf_counter() - start) * 1000, 2)
            self.circuit.record_failure()
            self._log_call(endpoint, url, None, latency_ms, 0, error=type(exc).__name__)
            METRIC_UPSTREAM_REQUESTS.labels(provider=self._name, outcome="network_error").inc()
            raise TransientError(
                f"network error: {type(exc).__name__}", provider_id=self._name, endpoint=endpoint
            ) from exc
        except httpx.RequestError as exc:
            # Redirect loops, undecodable bodies, bad URLs.
            latency_ms = round((time.perf_counter() - start) * 1000, 2)
            self.circuit.record_failure()
            self._log_call(endpoint, url, None, latency_ms, 0, error=type(exc).__name__)
            METRIC_UPSTREAM_REQUESTS.labels(provider=self._name, outcome="request_error").inc()
            raise TransientError(
                f"request error: {type(exc).__name__}", provider_id=self._name, endpoint=endpoint
            ) from exc

        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        byte_size = len(resp.content)
        status = resp.status_code
        METRIC_UPSTREAM_LATENCY.labels(provider=self._name).observe(latency_ms / 1000)
        self._log_call(endpoint, url, status, latency_ms, byte_size)

        if status == 404:
            # Upstream is healthy, it just doesn't know this event/sport.
            self.circuit.record_success()
            METRIC_UPSTREAM_REQUESTS.labels(provider=self._name, outcome="not_found").inc()
            raise EventNotFoundInProvider(
                "event not found", provider_id=self._name, endpoint=endpoint, status_code=status
            )
        if status in _TRANSIENT_STATUSES or status >= 500:
            self.circuit.record_failure()
            METRIC_UPSTREAM_REQUESTS.labels(provider=self._name, outcome="server_error").inc()
            raise TransientError(
                f"upstream status {status}",
                provider_id=self._name,
                endpoint=endpoint,
                status_code=status,
                retry_after=_parse_retry_after(resp),
            )
        if 400 <= status < 500:
            self.circuit.record_success()
            METRIC_UPSTREAM_REQUESTS.labels(provider=self._name, outcome="client_error").inc()
            raise PermanentError(
                f"upstream rejected request with status {status}",
                provider_id=self._name,
                endpoint=endpoint,
                status_code=status,
            )
        if not 200 <= status < 300:
            self.circuit.record_failure()
            METRIC_UPSTREAM_REQUESTS.labels(provider=self._name, outcome="unexpected_status").inc()
            raise TransientError(
                f"unexpected upstream status {status}",
                provider_id=self._name,
                endpoint=endpoint,
                status_code=status,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            self.circuit.record_failure()
            METRIC_UPSTREAM_REQUESTS.labels(provider=self._name, outcome="invalid_json").inc()
            raise InvalidPayloadError(
                "response body is not JSON", provider_id=self._name, endpoint=endpoint, status_code=status
            ) from exc

        self.circuit.record_success()
        METRIC_UPSTREAM_REQUESTS.labels(provider=self._name, outcome="ok").inc()
        return JsonResponse(
            data=data,
            status_code=status,
            byte_size=byte_size,
            headers={k.lower(): v for k, v in resp.headers.items()},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from wagerodds.models.odds import FailureKind, ProviderFailure

if TYPE_CHECKING:
    from wagerodds.providers.http_client import JsonResponse, ProviderHttpClient


class OddsError(Exception):
    """Base class for every error raised by the odds engine."""


class FetchError(OddsError):
    """An upstream call produced nothing usable."""

    kind = FailureKind.transient
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        provider_id: Optional[str] = None,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider_id = provider_id
        self.endpoint = endpoint
        self.status_code = status_code
        self.retry_after = retry_after

    def to_failure(self, provider_id: Optional[str] = None) -> ProviderFailure:
        return ProviderFailure(
            provider_id=provider_id or self.provider_id or "unknown",
            kind=self.kind,
            reason=self.message,
            status_code=self.status_code,
            endpoint=self.endpoint,
            retryable=self.retryable,
            retry_after=self.retry_after,
        )


class TransientError(FetchError):
    """Network failure, timeout, 429 or 5xx. The next provider is eligible."""


class InvalidPayloadError(TransientError):
    """Upstream answered 2xx with a body missing its top-level result."""


class PermanentError(FetchError):
    """4xx or misconfiguration (e.g. missing API key). Not retried for this event."""

    kind = FailureKind.permanent
    retryable = False


class EventNotFoundInProvider(PermanentError):
    """404-equivalent: the event is not in this provider's catalog."""

    kind = FailureKind.not_found


class UnsupportedSportError(PermanentError):
    """The provider has no mapping for the requested sport."""

    kind = FailureKind.unsupported_sport


@dataclass(frozen=True)
class Endpoint:
    """One upstream endpoint tier for one (event, sport) request."""

    name: str
    url: str
    params: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class ProviderRawPayload:
    """Untouched upstream JSON for one event. Lives only until normalization."""

    provider_id: str
    event_id: str
    sport_code: str
    endpoint: str
    data: Any
    price_format: str = "auto"
    status_code: int = 200
    byte_size: int = 0


class BaseOddsAdapter(ABC):
    """Abstract base class for upstream odds providers.

    An adapter knows one upstream's URL scheme, auth parameter and sport
    namespace. It deserializes and sanity-checks the transport payload but
    does no market parsing; that is the normalizer's job.
    """

    provider_id: str = ""
    display_name: str = ""
    price_format: str = "auto"

    def __init__(self, client: "ProviderHttpClient"):
        self._client = client

    @abstractmethod
    def resolve_sport(self, sport_code: str) -> str:
        """Map an app sport code to this provider's namespace.

        Raises UnsupportedSportError when there is no mapping.
        """
        ...

    @abstractmethod
    def endpoints(self, event_id: str, sport_code: str) -> list[Endpoint]:
        """Endpoint tiers for this event, in the order they should be tried."""
        ...

    @abstractmethod
    def extract(self, endpoint: Endpoint, data: Any, event_id: str) -> Any:
        """Validate the top-level shape of a decoded response and return the
        part that carries odds.

        Raises InvalidPayloadError for a malformed body and
        EventNotFoundInProvider when a list endpoint does not contain the event.
        """
        ...

    def _on_response(self, response: "JsonResponse") -> None:
        """Hook for header bookkeeping (usage counters and the like)."""

    async def fetch(
        self,
        event_id: str,
        sport_code: str,
        endpoint: Optional[Endpoint] = None,
    ) -> ProviderRawPayload:
        if endpoint is None:
            endpoint = self.endpoints(event_id, sport_code)[0]
        response = await self._client.get_json(
            endpoint.name,
            endpoint.url,
            params=endpoint.params or None,
            headers=endpoint.headers or None,
        )
        self._on_response(response)
        data = self.extract(endpoint, response.data, event_id)
        return ProviderRawPayload(
            provider_id=self.provider_id,
            event_id=event_id,
            sport_code=sport_code,
            endpoint=endpoint.name,
            data=data,
            price_format=self.price_format,
            status_code=response.status_code,
            byte_size=response.byte_size,
        )

    @property
    def circuit_open(self) -> bool:
        return self._client.circuit.is_open

    def usage(self) -> dict[str, Optional[int]]:
        return {}

    async def aclose(self) -> None:
        await self._client.aclose()

import logging
from typing import Any, Optional

from wagerodds.providers.base import (
    BaseOddsAdapter,
    Endpoint,
    EventNotFoundInProvider,
    InvalidPayloadError,
    PermanentError,
    UnsupportedSportError,
)
from wagerodds.providers.http_client import JsonResponse, ProviderHttpClient

logger = logging.getLogger("wagerodds.odds_api")

BASE_URL = "https://api.the-odds-api.com/v4"

# App sport code -> TheOddsAPI sport key
SPORT_KEYS: dict[str, str] = {
    "NFL": "americanfootball_nfl",
    "NBA": "basketball_nba",
    "MLB": "baseball_mlb",
    "NHL": "icehockey_nhl",
    "NCAAF": "americanfootball_ncaaf",
    "NCAAB": "basketball_ncaab",
    "MLS": "soccer_usa_mls",
    "EPL": "soccer_epl",
    "LA_LIGA": "soccer_spain_la_liga",
    "BUNDESLIGA": "soccer_germany_bundesliga",
    "SERIE_A": "soccer_italy_serie_a",
    "LIGUE_1": "soccer_france_ligue_one",
    "UCL": "soccer_uefa_champs_league",
    "UFC": "mma_mixed_martial_arts",
}

_NATIVE_PREFIXES = (
    "americanfootball_",
    "basketball_",
    "baseball_",
    "icehockey_",
    "soccer_",
    "mma_",
    "tennis_",
)


class TheOddsAPIAdapter(BaseOddsAdapter):
    """TheOddsAPI v4: per-event odds first, the sport-wide odds list second."""

    provider_id = "the_odds_api"
    display_name = "TheOddsAPI"

    def __init__(
        self,
        client: ProviderHttpClient,
        api_key: str,
        base_url: str = BASE_URL,
        regions: str = "us",
        markets: Optional[list[str]] = None,
        odds_format: str = "american",
        bookmakers: Optional[list[str]] = None,
    ):
        super().__init__(client)
        if odds_format not in ("american", "decimal"):
            raise ValueError(f"unsupported oddsFormat {odds_format!r}")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._regions = regions
        self._markets = markets or ["h2h", "spreads", "totals"]
        self._odds_format = odds_format
        self._bookmakers = bookmakers or []
        self.price_format = odds_format
        self._api_usage: dict[str, Optional[int]] = {
            "requests_used": None,
            "requests_remaining": None,
        }

    def resolve_sport(self, sport_code: str) -> str:
        code = (sport_code or "").strip()
        mapped = SPORT_KEYS.get(code.upper())
        if mapped:
            return mapped
        if code.lower().startswith(_NATIVE_PREFIXES):
            return code.lower()
        raise UnsupportedSportError(
            f"sport {sport_code!r} has no TheOddsAPI key", provider_id=self.provider_id
        )

    def _params(self) -> dict[str, Any]:
        params: dict[str, Any] = {
            "apiKey": self._api_key,
            "regions": self._regions,
            "markets": ",".join(self._markets),
            "oddsFormat": self._odds_format,
            "dateFormat": "iso",
        }
        if self._bookmakers:
            params["bookmakers"] = ",".join(self._bookmakers)
        return params

    def endpoints(self, event_id: str, sport_code: str) -> list[Endpoint]:
        if not self._api_key:
            raise PermanentError(
                "THEODDSAPI_API_KEY is not configured", provider_id=self.provider_id
            )
        sport_key = self.resolve_sport(sport_code)
        params = self._params()
        return [
            Endpoint(
                name="event_odds",
                url=f"{self._base_url}/sports/{sport_key}/events/{event_id}/odds",
                params=params,
            ),
            Endpoint(
                name="sport_odds",
                url=f"{self._base_url}/sports/{sport_key}/odds",
                params=params,
            ),
        ]

    def extract(self, endpoint: Endpoint, data: Any, event_id: str) -> Any:
        if endpoint.name == "event_odds":
            if not isinstance(data, dict) or not isinstance(data.get("bookmakers"), list):
                raise InvalidPayloadError(
                    "event odds response has no bookmakers array",
                    provider_id=self.provider_id,
                    endpoint=endpoint.name,
                )
            return data

        if not isinstance(data, list):
            raise InvalidPayloadError(
                f"expected a JSON array of events, got {type(data).__name__}",
                provider_id=self.provider_id,
                endpoint=endpoint.name,
            )
        for event in data:
            if isinstance(event, dict) and str(event.get("id")) == str(event_id):
                return event
        raise EventNotFoundInProvider(
            f"event {event_id} not in {len(data)} listed events",
            provider_id=self.provider_id,
            endpoint=endpoint.name,
        )

    def _on_response(self, response: JsonResponse) -> None:
        """Track API quota from response headers."""
        for header, key in (
            ("x-requests-used", "requests_used"),
            ("x-requests-remaining", "requests_remaining"),
        ):
            value = response.headers.get(header)
            if value is None:
                continue
            try:
                self._api_usage[key] = int(float(value))
            except ValueError:
                logger.debug("Ignoring non-numeric %s header: %r", header, value)

    def usage(self) -> dict[str, Optional[int]]:
        return dict(self._api_usage)

from typing import Any

from wagerodds.providers.base import (
    BaseOddsAdapter,
    Endpoint,
    InvalidPayloadError,
    UnsupportedSportError,
)
from wagerodds.providers.http_client import ProviderHttpClient

# App sport code -> (ESPN sport, ESPN league)
SPORT_TO_ESPN: dict[str, tuple[str, str]] = {
    "NFL": ("football", "nfl"),
    "NBA": ("basketball", "nba"),
    "MLB": ("baseball", "mlb"),
    "NHL": ("hockey", "nhl"),
    "NCAAF": ("football", "college-football"),
    "NCAAB": ("basketball", "mens-college-basketball"),
    "MLS": ("soccer", "usa.1"),
    "EPL": ("soccer", "eng.1"),
    # TheOddsAPI keys, so callers can use one namespace for both providers
    "americanfootball_nfl": ("football", "nfl"),
    "basketball_nba": ("basketball", "nba"),
    "baseball_mlb": ("baseball", "mlb"),
    "icehockey_nhl": ("hockey", "nhl"),
    "americanfootball_ncaaf": ("football", "college-football"),
    "basketball_ncaab": ("basketball", "mens-college-basketball"),
}

SITE_BASE_URL = "https://site.api.espn.com/apis/site/v2/sports"
CORE_BASE_URL = "https://sports.core.api.espn.com/v2/sports"


class ESPNOddsAdapter(BaseOddsAdapter):
    """ESPN public betting endpoints. No key; odds come in American format.

    Three tiers per event: the site summary (odds under ``odds``,
    ``pickcenter`` or ``againstTheSpread``), the core competition odds
    collection, and the site event-odds collection.
    """

    provider_id = "espn"
    display_name = "ESPN"
    price_format = "american"

    def __init__(
        self,
        client: ProviderHttpClient,
        site_base_url: str = SITE_BASE_URL,
        core_base_url: str = CORE_BASE_URL,
    ):
        super().__init__(client)
        self._site_base_url = site_base_url.rstrip("/")
        self._core_base_url = core_base_url.rstrip("/")

    def resolve_sport(self, sport_code: str) -> str:
        sport, league = self._sport_league(sport_code)
        return f"{sport}/{league}"

    def _sport_league(self, sport_code: str) -> tuple[str, str]:
        code = (sport_code or "").strip()
        mapped = SPORT_TO_ESPN.get(code) or SPORT_TO_ESPN.get(code.upper())
        if mapped:
            return mapped
        # Native ESPN path ("basketball/nba") passes straight through.
        parts = [p for p in code.split("/") if p]
        if len(parts) == 2:
            return parts[0], parts[1]
        if len(parts) == 3 and parts[1] == "leagues":
            return parts[0], parts[2]
        raise UnsupportedSportError(
            f"sport {sport_code!r} has no ESPN mapping", provider_id=self.provider_id
        )

    def endpoints(self, event_id: str, sport_code: str) -> list[Endpoint]:
        sport, league = self._sport_league(sport_code)
        return [
            Endpoint(
                name="summary",
                url=f"{self._site_base_url}/{sport}/{league}/summary",
                params={"event": event_id},
            ),
            Endpoint(
                name="core_odds",
                url=(
                    f"{self._core_base_url}/{sport}/leagues/{league}"
                    f"/events/{event_id}/competitions/{event_id}/odds"
                ),
            ),
            Endpoint(
                name="event_odds",
                url=f"{self._site_base_url}/{sport}/{league}/events/{event_id}/odds",
            ),
        ]

    def extract(self, endpoint: Endpoint, data: Any, event_id: str) -> Any:
        if not isinstance(data, dict):
            raise InvalidPayloadError(
                f"expected a JSON object, got {type(data).__name__}",
                provider_id=self.provider_id,
                endpoint=endpoint.name,
            )
        if endpoint.name == "summary":
            return data
        items = data.get("items")
        if not isinstance(items, list):
            raise InvalidPayloadError(
                "odds collection has no items array",
                provider_id=self.provider_id,
                endpoint=endpoint.name,
            )
        return data

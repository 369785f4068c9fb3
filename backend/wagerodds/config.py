"""
backend/wagerodds/config.py

Purpose:
    Central settings loading for the odds service. Upstream URLs, API keys,
    cache/timeout tuning and per-sport provider priority all come from the
    environment; nothing here carries a secret default.

Dependencies:
    - pydantic-settings
    - pathlib
"""

from pathlib import Path

from pydantic_settings import BaseSettings

# Prefer backend/.env, fallback to project-root .env.
_BACKEND_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
_ROOT_ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"


def _csv(value: str) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


class Settings(BaseSettings):
    # TheOddsAPI
    THEODDSAPI_API_KEY: str = ""
    THEODDSAPI_BASE_URL: str = "https://api.the-odds-api.com/v4"
    THEODDSAPI_REGIONS: str = "us"
    THEODDSAPI_ODDS_FORMAT: str = "american"  # american | decimal
    THEODDSAPI_BOOKMAKERS: str = ""  # csv; empty = all books in the region

    # ESPN public API (no key)
    ESPN_SITE_BASE_URL: str = "https://site.api.espn.com/apis/site/v2/sports"
    ESPN_CORE_BASE_URL: str = "https://sports.core.api.espn.com/v2/sports"

    # Odds engine
    ODDS_DEFAULT_MARKETS: str = "h2h,spreads,totals"
    ODDS_CACHE_TTL_SECONDS: int = 300  # 5 minutes
    ODDS_FAILURE_CACHE_TTL_SECONDS: int = 60
    ODDS_REQUEST_TIMEOUT_SECONDS: float = 8.0
    ODDS_REQUEST_DEADLINE_SECONDS: float = 12.0
    # JSON object, e.g. {"NFL": ["espn", "the_odds_api"], "EPL": ["the_odds_api"]}
    ODDS_PROVIDER_PRIORITY: dict[str, list[str]] = {}
    ODDS_DEFAULT_PROVIDERS: str = ""  # csv, used when a sport has no entry above
    ODDS_RESOLVE_STRATEGY: str = "merge"  # merge | first_available

    # Circuit breaker per upstream client
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 3
    CIRCUIT_BREAKER_RECOVERY_SECONDS: int = 300

    LOG_LEVEL: str = "INFO"
    BACKEND_CORS_ORIGINS: str = "http://localhost:5173"

    model_config = {
        "env_file": (str(_BACKEND_ENV_FILE), str(_ROOT_ENV_FILE)),
        "extra": "ignore",
    }

    def default_markets(self) -> list[str]:
        return _csv(self.ODDS_DEFAULT_MARKETS)

    def default_bookmakers(self) -> list[str]:
        return _csv(self.THEODDSAPI_BOOKMAKERS)

    def cors_origins(self) -> list[str]:
        return _csv(self.BACKEND_CORS_ORIGINS)


settings = Settings()

"""
backend/wagerodds/models/odds.py

Purpose:
    Canonical odds models. Everything past the adapter boundary speaks these
    types: raw upstream JSON is converted exactly once, by the market
    normalizer, and never travels further as an untyped dict.

Dependencies:
    - pydantic
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from wagerodds.utils import ensure_utc


class EventStatus(str, Enum):
    scheduled = "scheduled"
    live = "live"
    finished = "finished"


_STATUS_RANK = {
    EventStatus.scheduled: 0,
    EventStatus.live: 1,
    EventStatus.finished: 2,
}


class MarketKind(str, Enum):
    moneyline = "moneyline"
    spread = "spread"
    total = "total"


class Side(str, Enum):
    home = "home"
    away = "away"
    draw = "draw"
    over = "over"
    under = "under"


# Allowed sides per market, in display order.
MARKET_SIDES: dict[MarketKind, tuple[Side, ...]] = {
    MarketKind.moneyline: (Side.home, Side.away, Side.draw),
    MarketKind.spread: (Side.home, Side.away),
    MarketKind.total: (Side.over, Side.under),
}


class Event(BaseModel):
    """A scheduled or live contest. Frozen; status only moves forward."""

    model_config = ConfigDict(frozen=True)

    id: str
    sport_code: str
    home_team: Optional[str] = None
    away_team: Optional[str] = None
    home_team_id: Optional[str] = None
    away_team_id: Optional[str] = None
    start_time: Optional[datetime] = None
    status: EventStatus = EventStatus.scheduled

    @field_validator("start_time")
    @classmethod
    def _utc_start(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    def advance(self, status: EventStatus) -> "Event":
        """Return a copy with the new status; backwards moves raise ValueError."""
        status = EventStatus(status)
        if self.status == EventStatus.finished and status != EventStatus.finished:
            raise ValueError(f"event {self.id} is finished and cannot change status")
        if _STATUS_RANK[status] < _STATUS_RANK[self.status]:
            raise ValueError(
                f"event {self.id}: status cannot move from {self.status.value} to {status.value}"
            )
        return self.model_copy(update={"status": status})


class MarketQuote(BaseModel):
    """One price for one side of one market from one bookmaker."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    event_id: str
    bookmaker: str
    market: MarketKind
    side: Side
    price: int
    line: Optional[float] = None
    observed_at: datetime

    @field_validator("observed_at")
    @classmethod
    def _utc_observed(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_invariants(self) -> "MarketQuote":
        if self.side not in MARKET_SIDES[self.market]:
            raise ValueError(f"side {self.side.value} is not valid for {self.market.value}")
        if not (self.price >= 100 or self.price <= -100):
            raise ValueError(f"price {self.price} is not an American price")
        if self.market == MarketKind.moneyline and self.line is not None:
            raise ValueError("moneyline quotes carry no line")
        if self.market != MarketKind.moneyline and self.line is None:
            raise ValueError(f"{self.market.value} quotes require a line")
        return self


class QuoteSet(BaseModel):
    """All quotes one provider returned for one event at one point in time."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    event_id: str
    fetched_at: datetime
    endpoint: Optional[str] = None
    quotes: tuple[MarketQuote, ...] = ()
    event: Optional[Event] = None

    def markets(self) -> set[MarketKind]:
        return {q.market for q in self.quotes}

    def bookmakers(self) -> list[str]:
        return sorted({q.bookmaker for q in self.quotes})

    def select(self, market: MarketKind, side: Side) -> list[MarketQuote]:
        return [q for q in self.quotes if q.market == market and q.side == side]


class BestPrice(BaseModel):
    model_config = ConfigDict(frozen=True)

    market: MarketKind
    side: Side
    price: int
    line: Optional[float] = None
    provider_id: str
    bookmaker: str
    observed_at: datetime


class FailureKind(str, Enum):
    transient = "transient"
    permanent = "permanent"
    not_found = "not_found"
    unsupported_sport = "unsupported_sport"
    no_usable_quotes = "no_usable_quotes"
    timeout = "timeout"


class ProviderFailure(BaseModel):
    """Why a provider contributed nothing to an aggregation."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    kind: FailureKind
    reason: str
    status_code: Optional[int] = None
    endpoint: Optional[str] = None
    retryable: bool = True
    # Seconds the upstream asked us to back off (Retry-After), when it said.
    retry_after: Optional[float] = None


class AggregationStatus(str, Enum):
    success = "success"
    partial = "partial"
    exhausted = "exhausted"


class AggregationResult(BaseModel):
    """Outcome of one resolve: merged quote sets plus ordered diagnostics."""

    event_id: str
    sport_code: str
    status: AggregationStatus
    providers: list[str] = Field(default_factory=list)
    quote_sets: dict[str, QuoteSet] = Field(default_factory=dict)
    failures: list[ProviderFailure] = Field(default_factory=list)
    cached: bool = False

    @property
    def exhausted(self) -> bool:
        return self.status == AggregationStatus.exhausted

    def ordered_quote_sets(self) -> list[QuoteSet]:
        """Quote sets in provider priority order."""
        return [self.quote_sets[p] for p in self.providers if p in self.quote_sets]

    def all_quotes(self) -> list[MarketQuote]:
        return [q for qs in self.ordered_quote_sets() for q in qs.quotes]

    def markets(self) -> set[MarketKind]:
        return {q.market for q in self.all_quotes()}

    def event(self) -> Optional[Event]:
        """First event metadata any provider supplied, in priority order."""
        for qs in self.ordered_quote_sets():
            if qs.event is not None:
                return qs.event
        return None


def filter_bookmakers(quote_sets: Iterable[QuoteSet], bookmakers: Iterable[str]) -> list[QuoteSet]:
    """Restrict quote sets to the given bookmaker keys (case-insensitive)."""
    wanted = {b.strip().lower() for b in bookmakers if b and b.strip()}
    if not wanted:
        return list(quote_sets)
    return [
        qs.model_copy(update={"quotes": tuple(q for q in qs.quotes if q.bookmaker.lower() in wanted)})
        for qs in quote_sets
    ]


# ---------------------------------------------------------------------------
# API response models
# ---------------------------------------------------------------------------


class QuoteResponse(BaseModel):
    provider_id: str
    bookmaker: str
    bookmaker_name: str
    market: MarketKind
    side: Side
    price: int
    display_price: str
    line: Optional[float] = None
    observed_at: datetime


class OddsResponse(BaseModel):
    """Body of ``GET /odds``."""

    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(alias="eventId")
    sport: str
    status: AggregationStatus
    event: Optional[Event] = None
    quotes: list[QuoteResponse] = Field(default_factory=list)
    best_prices: list[BestPrice] = Field(default_factory=list, alias="bestPrices")
    partial_failures: list[ProviderFailure] = Field(default_factory=list, alias="partialFailures")
    cached: bool = False


class ProviderStatusResponse(BaseModel):
    provider_id: str
    display_name: str
    circuit_open: bool
    usage: dict[str, Optional[int]] = Field(default_factory=dict)

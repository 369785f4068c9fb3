"""
backend/wagerodds/services/market_normalizer.py

Purpose:
    Turn one provider's raw payload into canonical MarketQuotes. Upstreams
    have shipped three structurally different bookmaker shapes over time and
    all three are recognized per entry, regardless of which adapter fetched
    them:

    1. nested   ESPN pickcenter/items: ``homeTeamOdds`` / ``awayTeamOdds``
                plus ``spread``, ``overUnder``, ``overOdds``, ``underOdds``.
    2. flat     ``moneyline`` / ``spread`` / ``total`` objects keyed by side
                (also the camel-case ``moneyLine.homeTeamOdds`` variant).
    3. outcomes TheOddsAPI ``markets[].outcomes[]`` with h2h/spreads/totals.

    Prices always leave as American odds. A market with a missing number is
    dropped for that bookmaker, never zero-filled. The conversion is pure:
    ``observed_at`` is an argument, not a clock read.

Dependencies:
    - wagerodds.utils.odds_utils
    - wagerodds.models.odds
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterator, Optional

from wagerodds.models.odds import Event, EventStatus, MarketKind, MarketQuote, Side
from wagerodds.providers.base import OddsError, ProviderRawPayload
from wagerodds.utils import try_parse_utc
from wagerodds.utils.odds_utils import to_american, to_float

logger = logging.getLogger("wagerodds.market_normalizer")

_LINE_TOLERANCE = 1e-9

_OUTCOME_MARKETS = {
    "h2h": MarketKind.moneyline,
    "spreads": MarketKind.spread,
    "totals": MarketKind.total,
}

_DRAW_NAMES = {"draw", "tie", "x"}

_ESPN_STATE = {
    "pre": EventStatus.scheduled,
    "in": EventStatus.live,
    "post": EventStatus.finished,
}


class NormalizationError(OddsError):
    """A payload violated a canonical-form invariant (e.g. inconsistent spread signs)."""

    def __init__(self, message: str, *, provider_id: Optional[str] = None, bookmaker: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider_id = provider_id
        self.bookmaker = bookmaker


@dataclass(frozen=True)
class _Leg:
    market: MarketKind
    side: Side
    price: int
    line: Optional[float] = None


def _dig(data: Any, *path: str) -> Any:
    cur = data
    for key in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", name.strip().lower()).strip("_")


def _price_of(value: Any) -> Any:
    """Side values are either a bare price or an object carrying one."""
    if isinstance(value, dict):
        return _first(
            value.get("price"),
            value.get("odds"),
            value.get("american"),
            value.get("moneyLine"),
        )
    return value


def _line_of(value: Any) -> Any:
    if isinstance(value, dict):
        return _first(value.get("point"), value.get("line"), value.get("pointSpread"))
    return None


def _side_block(spread: dict, key: str) -> dict:
    """``spread.homeTeamOdds.spread`` in the legacy core form, else ``spread.homeTeamOdds``."""
    block = spread.get(key)
    if not isinstance(block, dict):
        return {}
    inner = block.get("spread")
    return inner if isinstance(inner, dict) else block


class MarketNormalizer:
    """Stateless raw-payload -> MarketQuote converter."""

    def normalize(
        self,
        payload: ProviderRawPayload,
        provider_id: str,
        event_id: str,
        observed_at: datetime,
    ) -> list[MarketQuote]:
        price_format = payload.price_format or "auto"
        home_name, away_name = self._team_names(payload.data)

        quotes: list[MarketQuote] = []
        seen: set[tuple[str, MarketKind, Side]] = set()

        for entry, shape in self._iter_entries(payload.data):
            bookmaker = self._bookmaker_key(entry, provider_id)
            if shape == "nested":
                legs = self._nested_legs(entry, price_format, provider_id, bookmaker)
            elif shape == "flat":
                legs = self._flat_legs(entry, price_format, provider_id, bookmaker)
            else:
                legs = self._outcome_legs(entry, price_format, provider_id, bookmaker, home_name, away_name)

            entry_ts = try_parse_utc(
                _first(entry.get("last_update"), entry.get("lastUpdated"), entry.get("lastModified"))
            )
            for leg in legs:
                key = (bookmaker, leg.market, leg.side)
                if key in seen:
                    continue
                seen.add(key)
                quotes.append(
                    MarketQuote(
                        provider_id=provider_id,
                        event_id=event_id,
                        bookmaker=bookmaker,
                        market=leg.market,
                        side=leg.side,
                        price=leg.price,
                        line=leg.line,
                        observed_at=entry_ts or observed_at,
                    )
                )
        logger.debug(
            "Normalized %d quotes for %s/%s from %s", len(quotes), provider_id, event_id, payload.endpoint
        )
        return quotes

    # ------------------------------------------------------------------
    # Payload walking
    # ------------------------------------------------------------------

    @staticmethod
    def _shape(entry: Any) -> Optional[str]:
        if not isinstance(entry, dict):
            return None
        if "homeTeamOdds" in entry or "awayTeamOdds" in entry:
            return "nested"
        markets = entry.get("markets")
        if isinstance(markets, list) and any(
            isinstance(m, dict) and isinstance(m.get("outcomes"), list) for m in markets
        ):
            return "outcomes"
        for key in ("moneyline", "moneyLine", "spread", "total"):
            if isinstance(entry.get(key), dict):
                return "flat"
        return None

    def _iter_entries(self, data: Any) -> Iterator[tuple[dict, str]]:
        for entry in self._candidate_entries(data):
            shape = self._shape(entry)
            if shape is not None:
                yield entry, shape

    def _candidate_entries(self, data: Any) -> list[Any]:
        if isinstance(data, list):
            entries: list[Any] = []
            for item in data:
                if isinstance(item, dict) and isinstance(item.get("bookmakers"), list):
                    entries.extend(item["bookmakers"])
                else:
                    entries.append(item)
            return entries
        if not isinstance(data, dict):
            return []
        if isinstance(data.get("bookmakers"), list):
            return data["bookmakers"]
        if isinstance(data.get("items"), list):
            return data["items"]

        # ESPN summary: first non-empty of odds, pickcenter, againstTheSpread.odds
        pickcenter = data.get("pickcenter")
        for candidate in (
            data.get("odds"),
            pickcenter,
            _dig(pickcenter, "odds"),
            _dig(pickcenter, "providers"),
            _dig(data, "againstTheSpread", "odds"),
        ):
            if isinstance(candidate, list) and candidate:
                return candidate

        # A single flat object is its own (unnamed) bookmaker.
        if self._shape(data) is not None:
            return [data]
        return []

    @staticmethod
    def _bookmaker_key(entry: dict, provider_id: str) -> str:
        key = entry.get("key")
        if isinstance(key, str) and key.strip():
            return _slug(key)
        provider = entry.get("provider")
        if isinstance(provider, dict):
            name = provider.get("name")
            if isinstance(name, str) and name.strip():
                return _slug(name)
            if provider.get("id") is not None:
                return f"{provider_id}_{provider['id']}"
        sportsbook = entry.get("sportsbook")
        if isinstance(sportsbook, dict) and sportsbook.get("id"):
            return _slug(str(sportsbook["id"]))
        title = entry.get("title")
        if isinstance(title, str) and title.strip():
            return _slug(title)
        return provider_id

    @staticmethod
    def _team_names(data: Any) -> tuple[Optional[str], Optional[str]]:
        if not isinstance(data, dict):
            return None, None
        if data.get("home_team") or data.get("away_team"):
            return _text(data.get("home_team")), _text(data.get("away_team"))
        competitions = _dig(data, "header", "competitions")
        if isinstance(competitions, list) and competitions:
            home = away = None
            for comp in _competitors(competitions[0]):
                name = _text(_dig(comp, "team", "displayName"))
                if comp.get("homeAway") == "home":
                    home = name
                elif comp.get("homeAway") == "away":
                    away = name
            return home, away
        return None, None

    # ------------------------------------------------------------------
    # Market builders shared by every shape
    # ------------------------------------------------------------------

    @staticmethod
    def _moneyline(home: Any, away: Any, draw: Any, fmt: str) -> list[_Leg]:
        home_price = to_american(home, fmt)
        away_price = to_american(away, fmt)
        if home_price is None or away_price is None:
            return []
        legs = [
            _Leg(MarketKind.moneyline, Side.home, home_price),
            _Leg(MarketKind.moneyline, Side.away, away_price),
        ]
        draw_price = to_american(draw, fmt)
        if draw_price is not None:
            legs.append(_Leg(MarketKind.moneyline, Side.draw, draw_price))
        return legs

    @staticmethod
    def _spread(
        home_line: Any,
        away_line: Any,
        home_price: Any,
        away_price: Any,
        fmt: str,
        provider_id: str,
        bookmaker: str,
    ) -> list[_Leg]:
        home_pt = to_float(home_line)
        away_pt = to_float(away_line)
        if home_pt is None and away_pt is None:
            return []
        if home_pt is not None and away_pt is not None:
            if abs(home_pt + away_pt) > _LINE_TOLERANCE:
                raise NormalizationError(
                    f"{bookmaker}: spread lines disagree (home {home_pt:+g}, away {away_pt:+g})",
                    provider_id=provider_id,
                    bookmaker=bookmaker,
                )
        elif home_pt is None:
            home_pt = -away_pt
        else:
            away_pt = -home_pt

        home_am = to_american(home_price, fmt)
        away_am = to_american(away_price, fmt)
        if home_am is None or away_am is None:
            return []
        # Negating a pick'em line yields -0.0; keep it unsigned.
        return [
            _Leg(MarketKind.spread, Side.home, home_am, home_pt + 0.0),
            _Leg(MarketKind.spread, Side.away, away_am, away_pt + 0.0),
        ]

    @staticmethod
    def _total(over_line: Any, under_line: Any, over_price: Any, under_price: Any, fmt: str) -> list[_Leg]:
        over_pt = to_float(over_line)
        under_pt = to_float(under_line)
        if over_pt is None:
            over_pt = under_pt
        if under_pt is None:
            under_pt = over_pt
        if over_pt is None:
            return []
        over_am = to_american(over_price, fmt)
        under_am = to_american(under_price, fmt)
        if over_am is None or under_am is None:
            return []
        return [
            _Leg(MarketKind.total, Side.over, over_am, over_pt),
            _Leg(MarketKind.total, Side.under, under_am, under_pt),
        ]

    # ------------------------------------------------------------------
    # Shape parsers
    # ------------------------------------------------------------------

    def _nested_legs(self, entry: dict, fmt: str, provider_id: str, bookmaker: str) -> list[_Leg]:
        home = _as_dict(entry.get("homeTeamOdds"))
        away = _as_dict(entry.get("awayTeamOdds"))
        legs = self._moneyline(
            _first(home.get("moneyLine"), _dig(home, "current", "moneyLine", "american")),
            _first(away.get("moneyLine"), _dig(away, "current", "moneyLine", "american")),
            _first(_dig(entry, "drawOdds", "moneyLine"), _dig(entry, "tieOdds", "moneyLine")),
            fmt,
        )

        home_line = _first(_dig(home, "current", "pointSpread", "american"), home.get("pointSpread"))
        away_line = _first(_dig(away, "current", "pointSpread", "american"), away.get("pointSpread"))
        if home_line is None and away_line is None:
            # Only the single published number; it is the away side's line.
            away_line = entry.get("spread") if not isinstance(entry.get("spread"), dict) else None
        legs += self._spread(
            home_line,
            away_line,
            _first(_dig(home, "current", "spread", "american"), home.get("spreadOdds")),
            _first(_dig(away, "current", "spread", "american"), away.get("spreadOdds")),
            fmt,
            provider_id,
            bookmaker,
        )

        over_under = entry.get("overUnder")
        legs += self._total(
            over_under,
            over_under,
            _first(_dig(entry, "current", "over", "american"), _price_of(entry.get("overOdds"))),
            _first(_dig(entry, "current", "under", "american"), _price_of(entry.get("underOdds"))),
            fmt,
        )
        return legs

    def _flat_legs(self, entry: dict, fmt: str, provider_id: str, bookmaker: str) -> list[_Leg]:
        legs: list[_Leg] = []

        ml = entry.get("moneyline")
        if not isinstance(ml, dict):
            ml = entry.get("moneyLine")
        if isinstance(ml, dict):
            if "homeTeamOdds" in ml or "awayTeamOdds" in ml:
                legs += self._moneyline(
                    _dig(ml, "homeTeamOdds", "moneyLine"),
                    _dig(ml, "awayTeamOdds", "moneyLine"),
                    _first(_dig(ml, "tieOdds", "moneyLine"), _dig(ml, "drawOdds", "moneyLine")),
                    fmt,
                )
            else:
                legs += self._moneyline(
                    _price_of(ml.get("home")),
                    _price_of(ml.get("away")),
                    _price_of(_first(ml.get("draw"), ml.get("tie"))),
                    fmt,
                )

        spread = entry.get("spread")
        if isinstance(spread, dict):
            if "homeTeamOdds" in spread or "awayTeamOdds" in spread:
                home = _side_block(spread, "homeTeamOdds")
                away = _side_block(spread, "awayTeamOdds")
                legs += self._spread(
                    _line_of(home),
                    _line_of(away),
                    home.get("moneyLine"),
                    away.get("moneyLine"),
                    fmt,
                    provider_id,
                    bookmaker,
                )
            else:
                home_line = _line_of(spread.get("home"))
                away_line = _line_of(spread.get("away"))
                if home_line is None and away_line is None:
                    away_line = spread.get("spread")
                legs += self._spread(
                    home_line,
                    away_line,
                    _price_of(spread.get("home")),
                    _price_of(spread.get("away")),
                    fmt,
                    provider_id,
                    bookmaker,
                )

        total = entry.get("total")
        if isinstance(total, dict):
            shared = _first(total.get("total"), total.get("overUnder"), total.get("line"))
            over = total.get("over")
            under = total.get("under")
            if over is None and under is None:
                over = total.get("overOdds")
                under = total.get("underOdds")
            legs += self._total(
                _first(_line_of(over), shared),
                _first(_line_of(under), shared),
                _price_of(over),
                _price_of(under),
                fmt,
            )
        return legs

    def _outcome_legs(
        self,
        entry: dict,
        fmt: str,
        provider_id: str,
        bookmaker: str,
        home_name: Optional[str],
        away_name: Optional[str],
    ) -> list[_Leg]:
        legs: list[_Leg] = []
        for market in entry.get("markets") or []:
            if not isinstance(market, dict):
                continue
            kind = _OUTCOME_MARKETS.get(str(market.get("key", "")).lower())
            if kind is None:
                continue
            sides: dict[Side, dict] = {}
            for outcome in market.get("outcomes") or []:
                if not isinstance(outcome, dict):
                    continue
                side = self._outcome_side(kind, outcome.get("name"), home_name, away_name)
                if side is not None and side not in sides:
                    sides[side] = outcome

            def price(side: Side) -> Any:
                return _price_of(sides.get(side))

            def point(side: Side) -> Any:
                return _line_of(sides.get(side))

            if kind == MarketKind.moneyline:
                legs += self._moneyline(price(Side.home), price(Side.away), price(Side.draw), fmt)
            elif kind == MarketKind.spread:
                legs += self._spread(
                    point(Side.home),
                    point(Side.away),
                    price(Side.home),
                    price(Side.away),
                    fmt,
                    provider_id,
                    bookmaker,
                )
            else:
                legs += self._total(
                    point(Side.over), point(Side.under), price(Side.over), price(Side.under), fmt
                )
        return legs

    @staticmethod
    def _outcome_side(
        kind: MarketKind,
        name: Any,
        home_name: Optional[str],
        away_name: Optional[str],
    ) -> Optional[Side]:
        if not isinstance(name, str):
            return None
        lowered = name.strip().lower()
        if kind == MarketKind.total:
            if lowered == "over":
                return Side.over
            if lowered == "under":
                return Side.under
            return None
        if home_name and name == home_name:
            return Side.home
        if away_name and name == away_name:
            return Side.away
        if lowered == "home":
            return Side.home
        if lowered == "away":
            return Side.away
        if kind == MarketKind.moneyline and lowered in _DRAW_NAMES:
            return Side.draw
        return None

    # ------------------------------------------------------------------
    # Event metadata
    # ------------------------------------------------------------------

    def extract_event(self, payload: ProviderRawPayload, event_id: str, sport_code: str) -> Optional[Event]:
        """Event metadata carried by the payload, if any. Fields of the wrong type read as missing."""
        data = payload.data
        if not isinstance(data, dict):
            return None

        if data.get("home_team") or data.get("away_team"):
            status = EventStatus.finished if data.get("completed") else EventStatus.scheduled
            return Event(
                id=event_id,
                sport_code=sport_code,
                home_team=_text(data.get("home_team")),
                away_team=_text(data.get("away_team")),
                start_time=try_parse_utc(data.get("commence_time")),
                status=status,
            )

        competitions = _dig(data, "header", "competitions")
        if not isinstance(competitions, list) or not competitions:
            return None
        comp = _as_dict(competitions[0])
        home = away = None
        for competitor in _competitors(comp):
            if competitor.get("homeAway") == "home":
                home = competitor
            elif competitor.get("homeAway") == "away":
                away = competitor
        state = _dig(comp, "status", "type", "state")
        return Event(
            id=event_id,
            sport_code=sport_code,
            home_team=_text(_dig(home, "team", "displayName")),
            away_team=_text(_dig(away, "team", "displayName")),
            home_team_id=_none_or_str(_dig(home, "team", "id")),
            away_team_id=_none_or_str(_dig(away, "team", "id")),
            start_time=try_parse_utc(comp.get("date")),
            status=_ESPN_STATE.get(state if isinstance(state, str) else "", EventStatus.scheduled),
        )


def _none_or_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _competitors(competition: Any) -> list[dict]:
    if not isinstance(competition, dict):
        return []
    competitors = competition.get("competitors")
    if not isinstance(competitors, list):
        return []
    return [c for c in competitors if isinstance(c, dict)]

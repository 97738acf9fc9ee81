"""The Odds API client for sportsbook prices.

Docs: https://the-odds-api.com/liveapi/guides/v4/
Free plan: 500 requests/month, 1 request/second. Every request is
routed through the client's RateLimiter.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import requests

from config import (
    ODDS_API_BASE, ODDS_API_KEY, ODDS_API_MARKETS, ODDS_API_MIN_INTERVAL_S,
    ODDS_API_REGIONS, ODDS_API_SPORTS,
)
from connector_base import ConnectorError, RateLimiter, decode_json, get_response
from models import NormalizedEvent, NormalizedOdds, SyncResult
from normalizer import normalize_name

logger = logging.getLogger(__name__)

SOURCE = "the_odds_api"

SUPPORTED_SPORTS: Dict[str, str] = {
    "esports_cs2": "Counter-Strike 2",
    "esports_lol": "League of Legends",
    "esports_dota2": "Dota 2",
    "esports_valorant": "Valorant",
    "mma_mixed_martial_arts": "MMA",
    "boxing_boxing": "Boxing",
    "tennis_atp": "ATP Tennis",
    "tennis_wta": "WTA Tennis",
    "soccer_australia_aleague": "A-League (Australia)",
    "soccer_argentina_primera_division": "Primera Division (Argentina)",
    "soccer_brazil_serie_a": "Brasileirao",
    "soccer_japan_j_league": "J-League",
    "soccer_mexico_ligamx": "Liga MX",
    "soccer_norway_eliteserien": "Eliteserien (Norway)",
    "soccer_sweden_allsvenskan": "Allsvenskan (Sweden)",
}


def _parse_time(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class OddsApiClient:
    """Thin client over The Odds API v4 with per-instance rate limiting."""

    def __init__(
        self,
        api_key: str = ODDS_API_KEY,
        base_url: str = ODDS_API_BASE,
        regions: str = ODDS_API_REGIONS,
        markets: str = ODDS_API_MARKETS,
        min_interval_s: float = ODDS_API_MIN_INTERVAL_S,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise ValueError("ODDS_API_KEY not set")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.regions = regions
        self.markets = markets
        self.limiter = RateLimiter(min_interval_s)
        self._session = session or requests.Session()
        self.requests_remaining: Optional[str] = None

    def _get(self, endpoint: str, params: Optional[Dict[str, str]] = None):
        query = {
            "apiKey": self.api_key,
            "regions": self.regions,
            "markets": self.markets,
            "oddsFormat": "decimal",
            "dateFormat": "iso",
        }
        query.update(params or {})
        r = get_response(
            self._session, f"{self.base_url}{endpoint}", query, self.limiter,
        )
        used = r.headers.get("x-requests-used")
        self.requests_remaining = r.headers.get("x-requests-remaining")
        logger.info(
            "The Odds API request %d: used=%s remaining=%s",
            self.limiter.request_count, used, self.requests_remaining,
        )
        return decode_json(r)

    def get_sports(self) -> List[dict]:
        return self._get("/sports/")

    def get_upcoming_events(self, sport_key: str) -> List[dict]:
        """Upcoming events with every bookmaker's prices for a sport."""
        data = self._get(f"/sports/{sport_key}/odds/")
        if not isinstance(data, list):
            raise ConnectorError(f"unexpected /odds payload for {sport_key}")
        return data

    def get_event_odds(self, sport_key: str, event_id: str) -> dict:
        return self._get(f"/sports/{sport_key}/events/{event_id}/odds/")

    @staticmethod
    def normalize_event(raw: dict, sport_key: str) -> NormalizedEvent:
        return NormalizedEvent(
            external_id=str(raw["id"]),
            source_api=SOURCE,
            sport_key=sport_key,
            home_team=normalize_name(raw.get("home_team") or ""),
            away_team=normalize_name(raw.get("away_team") or ""),
            commence_time=_parse_time(raw.get("commence_time")),
            competition=raw.get("sport_title"),
        )

    @staticmethod
    def normalize_odds(raw: dict, captured_at: Optional[datetime] = None) -> List[NormalizedOdds]:
        """One NormalizedOdds per bookmaker market.

        Home and away are matched by team name; a "Draw" outcome makes the
        market three-way. Spreads keep the home line in ``point``; totals
        keep the line and the over/under prices.
        """
        captured_at = captured_at or datetime.now(timezone.utc)
        home_team = raw.get("home_team")
        away_team = raw.get("away_team")
        odds_list: List[NormalizedOdds] = []

        for bookmaker in raw.get("bookmakers") or []:
            for market in bookmaker.get("markets") or []:
                outcomes = market.get("outcomes") or []
                by_name = {o.get("name"): o for o in outcomes}
                if market.get("key") == "totals":
                    # Over is priced as the first leg, Under as the second
                    home, away = by_name.get("Over"), by_name.get("Under")
                else:
                    home, away = by_name.get(home_team), by_name.get(away_team)
                if not home or not away:
                    continue
                draw = by_name.get("Draw")

                odds = NormalizedOdds(
                    event_id=str(raw["id"]),
                    bookmaker_key=bookmaker.get("key", ""),
                    bookmaker_name=bookmaker.get("title", ""),
                    market_type=market.get("key", "h2h"),
                    odds_home=float(home["price"]),
                    odds_away=float(away["price"]),
                    odds_draw=float(draw["price"]) if draw else None,
                    captured_at=captured_at,
                    source_api=SOURCE,
                )
                if home.get("point") is not None:
                    odds.point = float(home["point"])
                if odds.market_type == "totals":
                    odds.odds_over = odds.odds_home
                    odds.odds_under = odds.odds_away
                odds_list.append(odds)

        return odds_list

    def fetch_all(
        self, sport_keys: Optional[List[str]] = None,
    ) -> Tuple[List[NormalizedEvent], List[NormalizedOdds], SyncResult]:
        """Pull every configured sport. Per-sport failures are recorded, not raised."""
        t0 = time.monotonic()
        result = SyncResult(provider=SOURCE)
        events: List[NormalizedEvent] = []
        odds: List[NormalizedOdds] = []

        for sport_key in sport_keys or ODDS_API_SPORTS:
            try:
                raw_events = self.get_upcoming_events(sport_key)
            except ConnectorError as e:
                logger.error("The Odds API sync failed for %s: %s", sport_key, e)
                result.errors.append(f"{sport_key}: {e}")
                continue

            for raw in raw_events:
                try:
                    events.append(self.normalize_event(raw, sport_key))
                    odds.extend(self.normalize_odds(raw))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping malformed event in %s: %s", sport_key, e)
                    continue
            result.events_processed += len(raw_events)

        result.odds_processed = len(odds)
        result.success = not result.errors
        result.duration_ms = (time.monotonic() - t0) * 1000
        return events, odds, result

"""Polymarket Gamma API connector for sports prediction markets.

The Gamma API is the public read-only API that provides market metadata
and current outcome prices. No authentication required. Head-to-head
markets ("A vs B") are converted into decimal-odds quotes: a share
priced at p pays 1.00, so its decimal odds are 1 / p.
"""

import json
import logging
import re
import time
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import requests

from config import POLY_GAMMA_BASE, POLY_MAX_PAGES, POLY_MIN_INTERVAL_S
from connector_base import ConnectorError, RateLimiter, get_json
from models import NormalizedEvent, NormalizedOdds, SyncResult
from normalizer import normalize_name

logger = logging.getLogger(__name__)

SOURCE = "polymarket"
BOOKMAKER_KEY = "polymarket"
BOOKMAKER_NAME = "Polymarket"

SPORT_PATTERNS = [
    ("mma", re.compile(r"\b(ufc|mma|bellator|one fc)\b", re.I)),
    ("esports", re.compile(r"\b(cs2|csgo|counter-strike|lol|league of legends|dota|valorant|esports)\b", re.I)),
    ("tennis", re.compile(r"\b(atp|wta|tennis|grand slam|challenger)\b", re.I)),
    ("football", re.compile(r"\b(premier league|la liga|serie a|bundesliga|ligue 1|champions league|world cup)\b", re.I)),
    ("basketball", re.compile(r"\b(nba|basketball)\b", re.I)),
]

SPORT_TAGS = {
    "mma": "mma", "ufc": "mma", "esports": "esports", "tennis": "tennis",
    "soccer": "football", "football": "football", "basketball": "basketball",
}

VS_PATTERN = re.compile(r"^(?:.*?:\s*)?(.+?)\s+(?:vs\.?|v\.?|against)\s+(.+?)\s*\??$", re.I)


def _json_list(value) -> list:
    """Gamma encodes list fields either as JSON strings or real lists."""
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return [v.strip() for v in value.split(",") if v.strip()]
        return parsed if isinstance(parsed, list) else []
    return []


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def detect_sport_category(market: dict) -> Optional[str]:
    """Sport of a market from its tags, then from the question text."""
    for tag in _json_list(market.get("tags")):
        label = tag.get("label", "") if isinstance(tag, dict) else str(tag)
        sport = SPORT_TAGS.get(label.lower())
        if sport:
            return sport

    question = market.get("question") or ""
    for sport, pattern in SPORT_PATTERNS:
        if pattern.search(question):
            return sport
    return None


def is_betting_market(market: dict) -> bool:
    """Two-outcome, active, open market."""
    outcomes = _json_list(market.get("outcomes"))
    return (
        len(outcomes) == 2
        and market.get("active", True) is not False
        and not market.get("closed", False)
    )


def parse_outcome_prices(market: dict) -> Optional[Tuple[float, float]]:
    """Decimal odds for the two outcomes, or None when unpriced."""
    prices = _json_list(market.get("outcomePrices"))
    if len(prices) != 2:
        return None
    try:
        p0, p1 = float(prices[0]), float(prices[1])
    except (TypeError, ValueError):
        return None
    if not (0 < p0 < 1 and 0 < p1 < 1):
        return None
    return 1.0 / p0, 1.0 / p1


def normalize_market(
    market: dict,
    captured_at: Optional[datetime] = None,
) -> Optional[Tuple[NormalizedEvent, NormalizedOdds]]:
    """Turn a head-to-head Gamma market into an event and its quote.

    Only "A vs B" markets whose outcomes name the two sides are kept;
    Yes/No questions cannot be lined up against sportsbook outcomes.
    """
    if not is_betting_market(market):
        return None
    sport = detect_sport_category(market)
    if not sport:
        return None

    match = VS_PATTERN.match((market.get("question") or "").strip())
    if not match:
        return None
    outcomes = [str(o) for o in _json_list(market.get("outcomes"))]
    if any(o.lower() in ("yes", "no") for o in outcomes):
        return None
    odds = parse_outcome_prices(market)
    if odds is None:
        return None

    home = normalize_name(outcomes[0])
    away = normalize_name(outcomes[1])
    captured_at = captured_at or datetime.now(timezone.utc)
    commence = (
        _parse_time(market.get("gameStartTime"))
        or _parse_time(market.get("endDate"))
        or captured_at
    )
    external_id = str(market.get("id") or market.get("conditionId") or "")

    try:
        liquidity = float(market.get("liquidity")) if market.get("liquidity") is not None else None
    except (TypeError, ValueError):
        liquidity = None

    event = NormalizedEvent(
        external_id=external_id,
        source_api=SOURCE,
        sport_key=f"polymarket_{sport}",
        home_team=home,
        away_team=away,
        commence_time=commence,
        status="ended" if market.get("closed") else "scheduled",
        competition="Polymarket",
    )
    quote = NormalizedOdds(
        event_id=external_id,
        bookmaker_key=BOOKMAKER_KEY,
        bookmaker_name=BOOKMAKER_NAME,
        market_type="h2h",
        odds_home=odds[0],
        odds_away=odds[1],
        captured_at=captured_at,
        source_api=SOURCE,
        liquidity=liquidity,
    )
    return event, quote


class GammaClient:
    """Paginated reader of active Gamma markets."""

    def __init__(
        self,
        base_url: str = POLY_GAMMA_BASE,
        min_interval_s: float = POLY_MIN_INTERVAL_S,
        session: Optional[requests.Session] = None,
        orderbooks=None,
    ):
        self.base_url = base_url.rstrip("/")
        self.limiter = RateLimiter(min_interval_s)
        self._session = session or requests.Session()
        # Optional OrderbookReader, used when a market reports no liquidity
        self.orderbooks = orderbooks

    def _book_depth(self, market: dict) -> Optional[float]:
        tokens = _json_list(market.get("clobTokenIds"))
        if self.orderbooks is None or len(tokens) != 2:
            return None
        depths = [self.orderbooks.estimate_depth(str(t)) for t in tokens]
        if any(d is None for d in depths):
            return None
        return min(depths)

    def fetch_active_markets(self, limit: int = 100, offset: int = 0) -> List[dict]:
        params = {
            "active": "true",
            "closed": "false",
            "limit": str(limit),
            "offset": str(offset),
            "order": "liquidity",
            "ascending": "false",
        }
        data = get_json(self._session, f"{self.base_url}/markets", params, self.limiter)
        if isinstance(data, dict):
            data = data.get("markets") or data.get("data") or []
        if not isinstance(data, list):
            raise ConnectorError("unexpected /markets payload")
        return data

    def fetch_all_markets(self, max_pages: int = POLY_MAX_PAGES, page_size: int = 100) -> List[dict]:
        """Paginate through active markets, stopping at a short page."""
        markets: List[dict] = []
        for page in range(max_pages):
            batch = self.fetch_active_markets(limit=page_size, offset=page * page_size)
            markets.extend(batch)
            if len(batch) < page_size:
                break
        return markets

    def fetch_all(self) -> Tuple[List[NormalizedEvent], List[NormalizedOdds], SyncResult]:
        """Fetch and normalize sports markets. Failures land in SyncResult.errors."""
        t0 = time.monotonic()
        result = SyncResult(provider=SOURCE)
        events: List[NormalizedEvent] = []
        odds: List[NormalizedOdds] = []

        try:
            markets = self.fetch_all_markets()
        except ConnectorError as e:
            logger.error("Polymarket sync failed: %s", e)
            result.errors.append(str(e))
            markets = []

        captured_at = datetime.now(timezone.utc)
        for market in markets:
            parsed = normalize_market(market, captured_at)
            if parsed is None:
                continue
            if parsed[1].liquidity is None:
                parsed[1].liquidity = self._book_depth(market)
            events.append(parsed[0])
            odds.append(parsed[1])

        result.events_processed = len(events)
        result.odds_processed = len(odds)
        result.success = not result.errors
        result.duration_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Polymarket: %d head-to-head markets (from %d active)",
            len(events), len(markets),
        )
        return events, odds, result

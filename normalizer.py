"""Normalization helpers shared by the connectors and the detection pass.

Resolves team/player aliases, maps sport keys to categories, converts
odds formats, sanity-checks prices, and groups stored quotes per
event market for the engine.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from models import NormalizedEvent, NormalizedOdds, Quote

logger = logging.getLogger(__name__)

# Prices above this are almost always feed errors
MAX_REASONABLE_ODDS = 1000.0

ENTITY_ALIASES: Dict[str, str] = {
    # Esports
    "navi": "Natus Vincere",
    "natus vincere": "Natus Vincere",
    "faze": "FaZe Clan",
    "faze clan": "FaZe Clan",
    "g2": "G2 Esports",
    "g2 esports": "G2 Esports",
    "vitality": "Team Vitality",
    "team vitality": "Team Vitality",
    "liquid": "Team Liquid",
    "team liquid": "Team Liquid",
    "c9": "Cloud9",
    "cloud9": "Cloud9",
    # MMA
    "jon jones": "Jon Jones",
    "jones": "Jon Jones",
    "stipe miocic": "Stipe Miocic",
    "miocic": "Stipe Miocic",
    "conor mcgregor": "Conor McGregor",
    "mcgregor": "Conor McGregor",
    # Football abbreviations
    "man utd": "Manchester United",
    "manunited": "Manchester United",
    "man city": "Manchester City",
    "mancity": "Manchester City",
}

SPORT_CATEGORIES: Dict[str, str] = {
    "esports_cs2": "esports",
    "esports_lol": "esports",
    "esports_dota2": "esports",
    "esports_valorant": "esports",
    "polymarket_esports": "esports",
    "mma_mixed_martial_arts": "combat_sports",
    "boxing_boxing": "combat_sports",
    "polymarket_mma": "combat_sports",
    "tennis_atp": "tennis",
    "tennis_wta": "tennis",
    "polymarket_tennis": "tennis",
    "soccer_australia_aleague": "football",
    "soccer_argentina_primera_division": "football",
    "soccer_brazil_serie_a": "football",
    "polymarket_football": "football",
}

MARKET_NAMES: Dict[str, str] = {
    "h2h": "Match Winner",
    "spreads": "Handicap",
    "totals": "Over/Under",
    "map_winner": "Map Winner",
    "round_betting": "Round Betting",
}


def normalize_name(name: str) -> str:
    """Resolve known aliases, otherwise title-case each word."""
    key = name.lower().strip()
    if key in ENTITY_ALIASES:
        return ENTITY_ALIASES[key]
    return " ".join(w[:1].upper() + w[1:].lower() for w in name.strip().split())


def get_sport_category(sport_key: str) -> str:
    return SPORT_CATEGORIES.get(sport_key, "other")


def american_to_decimal(american: float) -> float:
    """Convert American odds (+150 / -150) to decimal odds."""
    american = float(american)
    if -100 < american < 100:
        raise ValueError(f"American odds must be <= -100 or >= 100, got {american}")
    if american > 0:
        return american / 100.0 + 1.0
    return 100.0 / abs(american) + 1.0


def fractional_to_decimal(numerator: int, denominator: int) -> float:
    """Convert fractional odds (5/2) to decimal odds (3.5)."""
    if denominator == 0:
        raise ValueError("Denominator cannot be zero")
    if numerator < 0 or denominator < 0:
        raise ValueError("Fractional odds components must be non-negative")
    return numerator / denominator + 1.0


def validate_odds(odds: NormalizedOdds) -> Tuple[bool, List[str]]:
    """Check a snapshot before it is stored.

    Returns (valid, errors). Prices must exceed 1.0; anything above
    MAX_REASONABLE_ODDS is treated as a data error.
    """
    errors: List[str] = []
    if odds.odds_home <= 1:
        errors.append("Invalid home odds: must be greater than 1")
    if odds.odds_away <= 1:
        errors.append("Invalid away odds: must be greater than 1")
    if odds.odds_draw is not None and odds.odds_draw <= 1:
        errors.append("Invalid draw odds: must be greater than 1")

    prices = [odds.odds_home, odds.odds_away]
    if odds.odds_draw is not None:
        prices.append(odds.odds_draw)
    if any(p > MAX_REASONABLE_ODDS for p in prices):
        errors.append("Odds seem unreasonably high, possible data error")

    return not errors, errors


def is_odds_fresh(
    captured_at: datetime,
    max_age_ms: int = 60000,
    now: Optional[datetime] = None,
) -> bool:
    if now is None:
        now = datetime.now(timezone.utc) if captured_at.tzinfo else datetime.now()
    return now - captured_at < timedelta(milliseconds=max_age_ms)


def group_quotes_by_market(
    rows: Iterable[Tuple[int, str, Quote]],
) -> Dict[Tuple[int, str], List[Quote]]:
    """Group (event_id, market_type, quote) rows per event market.

    Only the newest quote per bookmaker is kept; older snapshots from
    the same book would otherwise compete against its current price.
    """
    latest: Dict[Tuple[int, str], Dict[str, Quote]] = defaultdict(dict)
    for event_id, market_type, quote in rows:
        books = latest[(event_id, market_type)]
        prev = books.get(quote.bookmaker_id)
        if prev is None or quote.captured_at > prev.captured_at:
            books[quote.bookmaker_id] = quote
    return {key: list(books.values()) for key, books in latest.items()}


def format_event_title(event: NormalizedEvent) -> str:
    home = event.home_team or "TBD"
    away = event.away_team or "TBD"
    return f"{home} vs {away}"


def format_market_type(market_type: str) -> str:
    return MARKET_NAMES.get(market_type, market_type)


def _tokens(name: str) -> set:
    return {t for t in normalize_name(name).lower().replace("-", " ").split() if len(t) > 1}


def similarity_score(a: str, b: str) -> float:
    """Token overlap between two names, 0.0 to 1.0."""
    ta, tb = _tokens(a), _tokens(b)
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / min(len(ta), len(tb))


def match_event(
    candidate: NormalizedEvent,
    events: Iterable[Tuple[int, NormalizedEvent]],
    threshold: float = 0.5,
    max_start_gap: timedelta = timedelta(hours=36),
) -> Optional[Tuple[int, bool]]:
    """Find the stored event a cross-source event refers to.

    Both sides must clear the threshold, in either order. Returns
    (event_id, swapped) where swapped means home/away are reversed
    relative to the candidate, or None when nothing matches.
    """
    best: Optional[Tuple[int, bool]] = None
    best_score = 0.0
    for event_id, event in events:
        if event.source_api == candidate.source_api:
            continue
        try:
            gap = abs(event.commence_time - candidate.commence_time)
        except TypeError:
            continue
        if gap > max_start_gap:
            continue

        for swapped in (False, True):
            home, away = (event.away_team, event.home_team) if swapped else (event.home_team, event.away_team)
            s_home = similarity_score(candidate.home_team, home)
            s_away = similarity_score(candidate.away_team, away)
            if s_home < threshold or s_away < threshold:
                continue
            score = s_home + s_away
            if score > best_score:
                best, best_score = (event_id, swapped), score
    return best

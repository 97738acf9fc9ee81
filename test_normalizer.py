"""Tests for name/odds normalization, quote grouping and event matching."""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(__file__))

from models import NormalizedEvent, NormalizedOdds, Quote
from normalizer import (
    american_to_decimal, format_event_title, format_market_type,
    fractional_to_decimal, get_sport_category, group_quotes_by_market,
    is_odds_fresh, match_event, normalize_name, similarity_score, validate_odds,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _make_odds(home=2.0, away=2.0, draw=None):
    return NormalizedOdds(
        event_id="e1", bookmaker_key="draftkings", bookmaker_name="DraftKings",
        market_type="h2h", odds_home=home, odds_away=away, odds_draw=draw,
        captured_at=NOW, source_api="the_odds_api",
    )


def _make_quote(bookmaker_id, age_s=0.0, home=2.0):
    return Quote(
        bookmaker_id=bookmaker_id, bookmaker_key=f"b{bookmaker_id}", commission=0.0,
        odds_home=home, odds_away=2.0, captured_at=NOW - timedelta(seconds=age_s),
    )


def _make_event(home, away, source="the_odds_api", start=NOW):
    return NormalizedEvent(
        external_id=f"{home}-{away}", source_api=source, sport_key="mma_mixed_martial_arts",
        home_team=home, away_team=away, commence_time=start,
    )


def test_normalize_name_aliases_and_case():
    assert normalize_name("navi") == "Natus Vincere"
    assert normalize_name("  Man Utd ") == "Manchester United"
    assert normalize_name("team SPIRIT") == "Team Spirit"


def test_sport_category():
    assert get_sport_category("esports_cs2") == "esports"
    assert get_sport_category("mma_mixed_martial_arts") == "combat_sports"
    assert get_sport_category("curling") == "other"


def test_odds_conversion():
    assert american_to_decimal(150) == pytest.approx(2.5)
    assert american_to_decimal(-200) == pytest.approx(1.5)
    assert fractional_to_decimal(5, 2) == pytest.approx(3.5)
    with pytest.raises(ValueError):
        american_to_decimal(50)
    with pytest.raises(ValueError):
        fractional_to_decimal(1, 0)


def test_validate_odds():
    assert validate_odds(_make_odds()) == (True, [])
    valid, errors = validate_odds(_make_odds(home=1.0, draw=0.5))
    assert not valid
    assert len(errors) == 2
    valid, errors = validate_odds(_make_odds(away=1500.0))
    assert not valid
    assert "unreasonably high" in errors[0]


def test_is_odds_fresh():
    assert is_odds_fresh(NOW - timedelta(seconds=59), 60000, now=NOW)
    assert not is_odds_fresh(NOW - timedelta(seconds=60), 60000, now=NOW)


def test_group_keeps_latest_quote_per_bookmaker():
    rows = [
        (1, "h2h", _make_quote("1", age_s=30, home=2.0)),
        (1, "h2h", _make_quote("1", age_s=5, home=2.2)),
        (1, "h2h", _make_quote("2", age_s=10)),
        (1, "totals@2.5", _make_quote("1", age_s=5)),
        (2, "h2h", _make_quote("1", age_s=5)),
    ]
    grouped = group_quotes_by_market(rows)
    assert set(grouped) == {(1, "h2h"), (1, "totals@2.5"), (2, "h2h")}
    h2h = {q.bookmaker_id: q for q in grouped[(1, "h2h")]}
    assert len(h2h) == 2
    assert h2h["1"].odds_home == 2.2


def test_formatting():
    assert format_event_title(_make_event("Jon Jones", "")) == "Jon Jones vs TBD"
    assert format_market_type("totals") == "Over/Under"
    assert format_market_type("corners") == "corners"


def test_similarity_score():
    assert similarity_score("Jon Jones", "Jones") == 1.0
    assert similarity_score("Team Liquid", "Liquid") == 1.0
    assert similarity_score("Fnatic", "G2 Esports") == 0.0


def test_match_event_direct_and_swapped():
    stored = [
        (10, _make_event("Islam Makhachev", "Dustin Poirier")),
        (11, _make_event("Jon Jones", "Stipe Miocic")),
    ]
    poly = _make_event("Miocic", "Jones", source="polymarket", start=NOW + timedelta(hours=3))
    assert match_event(poly, stored) == (11, True)

    poly = _make_event("Makhachev", "Poirier", source="polymarket")
    assert match_event(poly, stored) == (10, False)


def test_match_event_requires_both_sides_and_close_start():
    stored = [(11, _make_event("Jon Jones", "Stipe Miocic"))]
    one_side = _make_event("Jon Jones", "Tom Aspinall", source="polymarket")
    assert match_event(one_side, stored) is None

    far = _make_event("Jon Jones", "Stipe Miocic", source="polymarket", start=NOW + timedelta(days=5))
    assert match_event(far, stored) is None


def test_match_event_ignores_same_source():
    stored = [(11, _make_event("Jon Jones", "Stipe Miocic", source="polymarket"))]
    poly = _make_event("Jon Jones", "Stipe Miocic", source="polymarket")
    assert match_event(poly, stored) is None

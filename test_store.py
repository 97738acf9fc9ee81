"""Tests for the SQLite store."""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(__file__))

from engine import ArbitrageEngine
from models import AlertRecord, Bookmaker, NormalizedEvent, NormalizedOdds, Opportunity
from store import Store, market_key

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    s = Store(str(tmp_path / "test.db"))
    yield s
    s.close()


def _make_event(external_id="ev1", source="the_odds_api", start=NOW + timedelta(hours=2)):
    return NormalizedEvent(
        external_id=external_id, source_api=source, sport_key="tennis_atp",
        home_team="Carlos Alcaraz", away_team="Jannik Sinner", commence_time=start,
    )


def _make_odds(captured_at=NOW, market="h2h", point=None, liquidity=None):
    return NormalizedOdds(
        event_id="ev1", bookmaker_key="draftkings", bookmaker_name="DraftKings",
        market_type=market, odds_home=2.1, odds_away=1.8, captured_at=captured_at,
        source_api="the_odds_api", point=point, liquidity=liquidity,
    )


def _make_opportunity(event_id, detected_at=NOW, expires_in=timedelta(minutes=2)):
    calc = ArbitrageEngine().calculate_2way_arbitrage(2.15, 1.95)
    calc.best_odds_home.bookmaker_key = "draftkings"
    calc.best_odds_away.bookmaker_key = "fanduel"
    return Opportunity(
        event_id=event_id, market_type="h2h", calculation=calc,
        quality_score=70, quality_grade="B", latency_risk="low",
        liquidity_score=50.0, max_stake=150.0, detected_at=detected_at,
        expires_at=detected_at + expires_in,
    )


def test_seed_defaults_is_idempotent(store):
    assert store.seed_defaults() == 6
    assert store.seed_defaults() == 0
    poly = store.get_bookmaker("polymarket")
    assert poly.kind == "prediction_market"
    assert poly.commission == pytest.approx(0.02)
    assert poly.supports_both_sides
    assert not store.get_bookmaker("draftkings").supports_both_sides


def test_seed_keeps_edited_bookmakers(store):
    store.upsert_bookmaker(Bookmaker("fanduel", "FanDuel", commission=0.01))
    store.seed_defaults()
    assert store.get_bookmaker("fanduel").commission == pytest.approx(0.01)


def test_ensure_bookmaker_registers_unknown(store):
    bm = store.ensure_bookmaker("unibet_eu", "Unibet")
    assert bm.id is not None
    assert store.ensure_bookmaker("unibet_eu", "Other").name == "Unibet"


def test_ensure_bookmaker_terms_apply_on_first_registration(store):
    bm = store.ensure_bookmaker("smarkets", "Smarkets", kind="exchange", commission=0.02)
    assert (bm.kind, bm.commission) == ("exchange", 0.02)
    again = store.ensure_bookmaker("smarkets", "Smarkets", commission=0.1)
    assert again.commission == pytest.approx(0.02)


def test_upsert_event_updates_in_place(store):
    first = store.upsert_event(_make_event())
    later = _make_event(start=NOW + timedelta(hours=3))
    assert store.upsert_event(later) == first
    assert store.get_event(first).commence_time == NOW + timedelta(hours=3)
    assert len(store.list_events()) == 1


def test_list_events_filters_by_source(store):
    store.upsert_event(_make_event("a"))
    store.upsert_event(_make_event("b", source="polymarket"))
    rows = store.list_events(source_api="polymarket")
    assert [ev.external_id for _, ev in rows] == ["b"]


def test_recent_quotes_window_and_join(store):
    store.seed_defaults()
    event_id = store.upsert_event(_make_event())
    bm = store.get_bookmaker("draftkings")
    store.add_snapshot(event_id, bm.id, _make_odds(NOW - timedelta(minutes=10)))
    store.add_snapshot(event_id, bm.id, _make_odds(NOW - timedelta(seconds=30), liquidity=900.0))
    store.add_snapshot(event_id, bm.id, _make_odds(NOW, market="totals", point=2.5))

    rows = store.recent_quotes(NOW - timedelta(minutes=5))
    assert len(rows) == 2
    ev, market, quote = rows[0]
    assert ev == event_id
    assert market == "h2h"
    assert quote.bookmaker_id == str(bm.id)
    assert quote.bookmaker_key == "draftkings"
    assert quote.liquidity == 900.0
    assert quote.captured_at == NOW - timedelta(seconds=30)
    assert rows[1][1] == "totals@2.5"


def test_recent_quotes_skips_inactive_bookmakers(store):
    store.upsert_bookmaker(Bookmaker("closedbook", "Closed", is_active=False))
    bm = store.get_bookmaker("closedbook")
    event_id = store.upsert_event(_make_event())
    store.add_snapshot(event_id, bm.id, _make_odds())
    assert store.recent_quotes(NOW - timedelta(minutes=1)) == []


def test_market_key():
    assert market_key("h2h", None) == "h2h"
    assert market_key("spreads", -1.5) == "spreads@-1.5"


def test_opportunity_round_trip(store):
    event_id = store.upsert_event(_make_event())
    opp = _make_opportunity(event_id)
    opp_id = store.create_opportunity(opp)
    assert opp.id == opp_id

    loaded = store.get_opportunity(opp_id)
    assert loaded.calculation.stake_home == pytest.approx(opp.calculation.stake_home)
    assert loaded.calculation.best_odds_away.bookmaker_key == "fanduel"
    assert loaded.detected_at == NOW
    assert loaded.status == "active"
    assert store.find_active_opportunity(event_id, "h2h").id == opp_id


def test_status_transition_only_from_active(store):
    event_id = store.upsert_event(_make_event())
    opp_id = store.create_opportunity(_make_opportunity(event_id))
    assert store.update_opportunity_status(opp_id, "executed")
    assert not store.update_opportunity_status(opp_id, "dismissed")
    assert store.get_opportunity(opp_id).status == "executed"
    with pytest.raises(ValueError):
        store.update_opportunity_status(opp_id, "active")
    with pytest.raises(ValueError):
        store.update_opportunity_status(opp_id, "bogus")


def test_expire_and_list(store):
    event_id = store.upsert_event(_make_event())
    old = store.create_opportunity(_make_opportunity(event_id, NOW - timedelta(minutes=10)))
    fresh = store.create_opportunity(_make_opportunity(event_id, NOW))
    assert store.expire_opportunities(NOW) == 1
    assert [o.id for o in store.list_opportunities("active")] == [fresh]
    assert [o.id for o in store.list_opportunities("expired")] == [old]
    assert [o.id for o in store.list_opportunities(None)] == [fresh, old]
    assert store.count_opportunities_since(NOW - timedelta(minutes=1)) == 1


def test_settings_defaults_and_update(store):
    settings = store.get_settings()
    assert settings.min_margin == 0.02
    assert settings.timezone == "Europe/Madrid"

    updated = store.update_settings({"min_margin": 0.03, "sports_filter": ["esports"]})
    assert updated.min_margin == 0.03
    assert store.get_settings().sports_filter == ["esports"]

    with pytest.raises(ValueError):
        store.update_settings({"min_margin": 0.05, "nonsense": 1})
    assert store.get_settings().min_margin == 0.03


def test_alerts_and_sync_state(store):
    store.record_alert(AlertRecord(1, "telegram", "sent", sent_at=NOW))
    store.record_alert(AlertRecord(1, "email", "failed", "bounced", sent_at=NOW + timedelta(seconds=1)))
    alerts = store.list_alerts()
    assert [a.channel for a in alerts] == ["email", "telegram"]
    assert alerts[0].error == "bounced"

    store.update_sync_state("polymarket", False, 120.0, now=NOW)
    store.update_sync_state("polymarket", False, 130.0, now=NOW)
    state = store.list_sync_states()[0]
    assert state["consecutive_failures"] == 2
    assert state["total_syncs"] == 2
    store.update_sync_state("polymarket", True, 90.0, now=NOW)
    state = store.list_sync_states()[0]
    assert state["consecutive_failures"] == 0
    assert state["last_success"] is True


def test_stats(store):
    store.seed_defaults()
    event_id = store.upsert_event(_make_event())
    store.create_opportunity(_make_opportunity(event_id))
    stats = store.stats(now=NOW)
    assert stats["active_opportunities"] == 1
    assert stats["events"] == 1
    assert stats["bookmakers"] == 6
    assert stats["opportunities_today"] == 1
    assert stats["best_profit_percentage"] > 0


def test_unknown_bookmaker_kind_rejected(store):
    with pytest.raises(ValueError):
        store.upsert_bookmaker(Bookmaker("odd", "Odd", kind="casino"))


def test_list_bookmakers_active_only(store):
    store.seed_defaults()
    store.upsert_bookmaker(Bookmaker("closedbook", "Closed", is_active=False))
    assert len(store.list_bookmakers()) == 7
    assert "closedbook" not in [b.key for b in store.list_bookmakers(active_only=True)]


def test_prune_snapshots(store):
    store.seed_defaults()
    event_id = store.upsert_event(_make_event())
    bm = store.get_bookmaker("draftkings")
    store.add_snapshot(event_id, bm.id, _make_odds(NOW - timedelta(days=3)))
    store.add_snapshot(event_id, bm.id, _make_odds(NOW))
    assert store.prune_snapshots(NOW - timedelta(days=2)) == 1
    assert len(store.recent_quotes(NOW - timedelta(days=5))) == 1


@pytest.mark.parametrize("changes", [
    {"min_margin": "0.03"},
    {"min_margin": float("nan")},
    {"max_daily_exposure": -1},
    {"telegram_enabled": "yes"},
    {"sports_filter": "esports"},
    {"max_latency_risk": "extreme"},
    {"webhook_url": 42},
])
def test_update_settings_rejects_bad_values(store, changes):
    with pytest.raises(ValueError):
        store.update_settings(changes)
    assert store.get_settings() == type(store.get_settings())()


def test_update_settings_coerces_numbers(store):
    settings = store.update_settings({"max_stake_per_bet": 250, "quiet_hours_start": "22:00"})
    assert settings.max_stake_per_bet == 250.0
    assert isinstance(settings.max_stake_per_bet, float)
    assert store.update_settings({"quiet_hours_start": None}).quiet_hours_start is None

"""Tests for the sync service: ingestion, cross-source matching, detection and the loop."""

import os
import sys
import threading
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(__file__))

from config import EngineConfig
from engine import ArbitrageEngine
from models import AlertRecord, AlertSettings, NormalizedEvent, NormalizedOdds, SyncResult
from store import Store
from sync_service import SyncService


def _now():
    return datetime.now(timezone.utc)


@pytest.fixture
def store(tmp_path):
    s = Store(str(tmp_path / "sync.db"))
    yield s
    s.close()


def _make_event(external_id="ev1", source="the_odds_api", home="Carlos Alcaraz",
                away="Jannik Sinner", start=None):
    return NormalizedEvent(
        external_id=external_id, source_api=source, sport_key="tennis_atp",
        home_team=home, away_team=away,
        commence_time=start or _now() + timedelta(hours=3),
    )


def _make_odds(bookmaker, home, away, event_id="ev1", source="the_odds_api", captured_at=None):
    return NormalizedOdds(
        event_id=event_id, bookmaker_key=bookmaker, bookmaker_name=bookmaker.title(),
        market_type="h2h", odds_home=home, odds_away=away,
        captured_at=captured_at or _now(), source_api=source,
    )


class _FakeConnector:
    def __init__(self, provider, events=(), odds=(), success=True):
        self.provider = provider
        self.events = list(events)
        self.odds = list(odds)
        self.success = success
        self.calls = 0

    def fetch_all(self):
        self.calls += 1
        result = SyncResult(
            provider=self.provider, success=self.success,
            events_processed=len(self.events),
            errors=[] if self.success else ["upstream down"],
        )
        return list(self.events), list(self.odds), result


class _FakeDispatcher:
    def __init__(self):
        self.sent = []

    def dispatch(self, opp, event, settings):
        self.sent.append((opp.id, event.external_id))
        return [AlertRecord(opp.id, "webhook", "sent")]


def _arb_connector():
    # DraftKings home 2.15 + FanDuel away 1.95 is a 2.2% margin
    return _FakeConnector("the_odds_api", [_make_event()], [
        _make_odds("draftkings", 2.15, 1.80),
        _make_odds("fanduel", 1.70, 1.95),
    ])


# ---------- ingestion ----------


def test_odds_api_sync_stores_events_and_snapshots(store):
    service = SyncService(store, odds_api=_arb_connector())
    service.initialize()
    result = service.sync_odds_api()
    assert result.success
    assert result.odds_processed == 2
    assert len(store.list_events()) == 1
    quotes = store.recent_quotes(_now() - timedelta(minutes=1))
    assert sorted(q.bookmaker_key for _, _, q in quotes) == ["draftkings", "fanduel"]


def test_invalid_odds_are_not_stored(store):
    connector = _FakeConnector("the_odds_api", [_make_event()], [
        _make_odds("draftkings", 1.0, 1.80),
        _make_odds("fanduel", 1.70, 1.95),
    ])
    service = SyncService(store, odds_api=connector)
    result = service.sync_odds_api()
    assert result.odds_processed == 1


def test_unknown_bookmaker_is_registered(store):
    connector = _FakeConnector("the_odds_api", [_make_event()], [_make_odds("unibet_eu", 2.0, 1.9)])
    SyncService(store, odds_api=connector).sync_odds_api()
    assert store.get_bookmaker("unibet_eu") is not None


def test_unknown_exchange_gets_default_commission(store):
    connector = _FakeConnector("the_odds_api", [_make_event()], [
        _make_odds("betfair_ex_uk", 2.0, 1.9),
        _make_odds("unibet_eu", 2.0, 1.9),
    ])
    SyncService(store, odds_api=connector).sync_odds_api()
    exchange = store.get_bookmaker("betfair_ex_uk")
    assert exchange.kind == "exchange"
    assert exchange.commission == pytest.approx(0.02)
    assert store.get_bookmaker("unibet_eu").commission == 0.0


def test_unknown_prediction_market_gets_configured_commission(store):
    market = _make_event("pm3", source="polymarket", home="Jon Jones", away="Stipe Miocic")
    poly = _FakeConnector("polymarket", [market], [
        _make_odds("polymarket", 1.8, 2.1, event_id="pm3", source="polymarket"),
    ])
    engine = ArbitrageEngine(EngineConfig(commission_default=0.05))
    SyncService(store, polymarket=poly, engine=engine).sync_polymarket()
    venue = store.get_bookmaker("polymarket")
    assert venue.kind == "prediction_market"
    assert venue.commission == pytest.approx(0.05)


def test_unconfigured_source_reports_failure(store):
    service = SyncService(store)
    assert not service.sync_odds_api().success
    assert not service.sync_polymarket().success


def test_polymarket_market_matched_and_swapped(store):
    store.seed_defaults()
    SyncService(store, odds_api=_arb_connector()).sync_odds_api()
    [(sportsbook_id, _)] = store.list_events()

    market = _make_event("pm1", source="polymarket", home="Sinner", away="Alcaraz")
    poly = _FakeConnector("polymarket", [market], [
        _make_odds("polymarket", 1.6, 2.5, event_id="pm1", source="polymarket"),
    ])
    service = SyncService(store, polymarket=poly)
    result = service.sync_polymarket()

    assert result.odds_processed == 1
    assert len(store.list_events()) == 1
    rows = [r for r in store.recent_quotes(_now() - timedelta(minutes=1))
            if r[2].bookmaker_key == "polymarket"]
    event_id, _, quote = rows[0]
    assert event_id == sportsbook_id
    assert (quote.odds_home, quote.odds_away) == (2.5, 1.6)


def test_unmatched_polymarket_market_gets_own_event(store):
    market = _make_event("pm2", source="polymarket", home="Jon Jones", away="Stipe Miocic")
    poly = _FakeConnector("polymarket", [market], [
        _make_odds("polymarket", 1.8, 2.1, event_id="pm2", source="polymarket"),
    ])
    SyncService(store, polymarket=poly).sync_polymarket()
    [(_, ev)] = store.list_events()
    assert ev.source_api == "polymarket"
    assert ev.external_id == "pm2"


# ---------- detection ----------


def test_process_opportunities_creates_once(store):
    store.seed_defaults()
    service = SyncService(store, odds_api=_arb_connector())
    service.sync_odds_api()
    now = _now()

    created = service.process_opportunities(now)
    assert len(created) == 1
    opp = created[0]
    assert opp.id is not None
    assert opp.calculation.best_odds_home.bookmaker_key == "draftkings"
    assert opp.calculation.best_odds_away.bookmaker_key == "fanduel"

    assert service.process_opportunities(now) == []
    assert len(store.list_opportunities("active")) == 1


def test_alerts_dispatched_and_recorded(store):
    store.seed_defaults()
    dispatcher = _FakeDispatcher()
    service = SyncService(store, odds_api=_arb_connector(), dispatcher=dispatcher)
    service.sync_odds_api()
    [opp] = service.process_opportunities(_now())
    assert dispatcher.sent == [(opp.id, "ev1")]
    assert [a.channel for a in store.list_alerts()] == ["webhook"]


def test_alert_filtered_by_settings(store):
    store.seed_defaults()
    store.update_settings({"min_margin": 0.05})
    dispatcher = _FakeDispatcher()
    service = SyncService(store, odds_api=_arb_connector(), dispatcher=dispatcher)
    service.sync_odds_api()
    assert len(service.process_opportunities(_now())) == 1
    assert dispatcher.sent == []


def test_daily_exposure_limits_alerts(store):
    service = SyncService(store, dispatcher=_FakeDispatcher())
    settings = AlertSettings(max_stake_per_bet=100.0, max_daily_exposure=150.0)
    now = _now()

    class _Opp:
        max_stake = 500.0

    assert service._within_exposure(_Opp(), settings, now)
    assert not service._within_exposure(_Opp(), settings, now)
    assert service._within_exposure(_Opp(), settings, now + timedelta(days=1))


# ---------- cycles ----------


def test_run_full_sync_records_state(store):
    store.seed_defaults()
    service = SyncService(store, odds_api=_arb_connector())
    results = service.run_full_sync()
    assert set(results) == {"the_odds_api"}
    assert results["the_odds_api"].opportunities_detected == 1
    assert service.cycle == 1
    [state] = store.list_sync_states()
    assert state["provider"] == "the_odds_api"
    assert state["total_syncs"] == 1


def test_run_forever_stops_at_max_cycles(store):
    connector = _arb_connector()
    seen = []
    service = SyncService(store, odds_api=connector)
    reason = service.run_forever(
        interval=0, max_cycles=2, on_cycle=lambda results, opps: seen.append(len(opps)),
    )
    assert reason == "max_cycles"
    assert connector.calls == 2
    assert len(seen) == 2


def test_run_forever_circuit_breaker(store):
    connector = _FakeConnector("the_odds_api", success=False)
    service = SyncService(store, odds_api=connector)
    assert service.run_forever(interval=0, max_failures=3) == "circuit_breaker"
    assert connector.calls == 3


def test_run_forever_honours_stop_event(store):
    stop = threading.Event()
    stop.set()
    connector = _arb_connector()
    assert SyncService(store, odds_api=connector).run_forever(interval=0, stop=stop) == "stopped"
    assert connector.calls == 0


class _CrashingConnector(_FakeConnector):
    def fetch_all(self):
        self.calls += 1
        raise RuntimeError("boom")


def test_run_forever_survives_crashing_cycle(store):
    connector = _CrashingConnector("the_odds_api")
    service = SyncService(store, odds_api=connector)
    assert service.run_forever(interval=0, max_cycles=2, max_failures=5) == "max_cycles"
    assert connector.calls == 2


def test_crashing_cycles_trip_circuit_breaker(store):
    connector = _CrashingConnector("the_odds_api")
    service = SyncService(store, odds_api=connector)
    assert service.run_forever(interval=0, max_failures=2) == "circuit_breaker"
    assert connector.calls == 2


def test_corrupt_stored_setting_does_not_stop_loop(store):
    store.seed_defaults()
    # Written around update_settings, as an older build could have stored it
    store.db.execute("INSERT OR REPLACE INTO settings (key, value) VALUES ('min_margin', '\"0.03\"')")
    store.db.commit()
    service = SyncService(store, odds_api=_arb_connector(), dispatcher=_FakeDispatcher())
    assert service.run_forever(interval=0, max_cycles=2) == "max_cycles"

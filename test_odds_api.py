"""Tests for The Odds API client normalization and sync."""

import os
import sys
from datetime import datetime, timezone

import pytest

sys.path.insert(0, os.path.dirname(__file__))

from connector_base import ConnectorError
from odds_api.client import OddsApiClient

CAPTURED = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _make_raw_event(event_id="abc", draw=False):
    h2h = [
        {"name": "Team Liquid", "price": 2.15},
        {"name": "Cloud9", "price": 1.80},
    ]
    if draw:
        h2h.append({"name": "Draw", "price": 3.5})
    return {
        "id": event_id,
        "sport_key": "esports_cs2",
        "sport_title": "CS2",
        "commence_time": "2025-06-01T18:00:00Z",
        "home_team": "Team Liquid",
        "away_team": "Cloud9",
        "bookmakers": [
            {
                "key": "draftkings",
                "title": "DraftKings",
                "markets": [
                    {"key": "h2h", "outcomes": h2h},
                    {"key": "spreads", "outcomes": [
                        {"name": "Team Liquid", "price": 1.9, "point": -1.5},
                        {"name": "Cloud9", "price": 1.95, "point": 1.5},
                    ]},
                    {"key": "totals", "outcomes": [
                        {"name": "Over", "price": 1.85, "point": 2.5},
                        {"name": "Under", "price": 2.0, "point": 2.5},
                    ]},
                ],
            },
            {
                "key": "fanduel",
                "title": "FanDuel",
                "markets": [{"key": "h2h", "outcomes": [
                    {"name": "Someone Else", "price": 2.0},
                    {"name": "Cloud9", "price": 1.9},
                ]}],
            },
        ],
    }


class _FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code
        self.ok = status_code < 400
        self.text = ""
        self.url = "https://odds.test"
        self.headers = {"x-requests-used": "10", "x-requests-remaining": "490"}

    def json(self):
        return self._payload


class _FakeSession:
    def __init__(self, by_sport):
        self.by_sport = by_sport
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        for sport, resp in self.by_sport.items():
            if f"/sports/{sport}/" in url:
                return resp
        return _FakeResponse([], 404)


def _client(session):
    return OddsApiClient(api_key="KEY", base_url="https://odds.test/v4", min_interval_s=0, session=session)


def test_requires_api_key():
    with pytest.raises(ValueError):
        OddsApiClient(api_key="")


def test_normalize_event():
    ev = OddsApiClient.normalize_event(_make_raw_event(), "esports_cs2")
    assert ev.external_id == "abc"
    assert ev.home_team == "Team Liquid"
    assert ev.commence_time == datetime(2025, 6, 1, 18, 0, tzinfo=timezone.utc)
    assert ev.competition == "CS2"


def test_normalize_odds_markets():
    odds = OddsApiClient.normalize_odds(_make_raw_event(), CAPTURED)
    # FanDuel's h2h names an unknown team and is dropped
    assert [(o.bookmaker_key, o.market_type) for o in odds] == [
        ("draftkings", "h2h"), ("draftkings", "spreads"), ("draftkings", "totals"),
    ]
    h2h, spreads, totals = odds
    assert (h2h.odds_home, h2h.odds_away, h2h.odds_draw) == (2.15, 1.80, None)
    assert h2h.point is None
    assert spreads.point == -1.5
    assert (totals.odds_over, totals.odds_under, totals.point) == (1.85, 2.0, 2.5)
    assert all(o.captured_at == CAPTURED for o in odds)


def test_normalize_odds_three_way():
    h2h = OddsApiClient.normalize_odds(_make_raw_event(draw=True), CAPTURED)[0]
    assert h2h.odds_draw == 3.5


def test_request_parameters_and_usage_headers():
    session = _FakeSession({"esports_cs2": _FakeResponse([_make_raw_event()])})
    client = _client(session)
    client.get_upcoming_events("esports_cs2")
    url, params = session.calls[0]
    assert url == "https://odds.test/v4/sports/esports_cs2/odds/"
    assert params["apiKey"] == "KEY"
    assert params["oddsFormat"] == "decimal"
    assert client.requests_remaining == "490"


def test_unexpected_payload_raises():
    session = _FakeSession({"esports_cs2": _FakeResponse({"message": "odd"})})
    with pytest.raises(ConnectorError):
        _client(session).get_upcoming_events("esports_cs2")


def test_fetch_all_records_per_sport_errors():
    session = _FakeSession({
        "esports_cs2": _FakeResponse([_make_raw_event("a"), _make_raw_event("b")]),
        "tennis_atp": _FakeResponse({"message": "quota"}, 429),
    })
    events, odds, result = _client(session).fetch_all(["esports_cs2", "tennis_atp"])
    assert [e.external_id for e in events] == ["a", "b"]
    assert len(odds) == 6
    assert result.events_processed == 2
    assert result.odds_processed == 6
    assert not result.success
    assert result.errors[0].startswith("tennis_atp")


def test_sports_and_event_odds_endpoints():
    class _Session:
        def __init__(self):
            self.calls = []

        def get(self, url, params=None, timeout=None):
            self.calls.append(url)
            if url.endswith("/sports/"):
                return _FakeResponse([{"key": "tennis_atp", "active": True}])
            return _FakeResponse(_make_raw_event("xyz"))

    session = _Session()
    client = _client(session)
    assert client.get_sports()[0]["key"] == "tennis_atp"
    assert client.get_event_odds("esports_cs2", "xyz")["id"] == "xyz"
    assert session.calls[1] == "https://odds.test/v4/sports/esports_cs2/events/xyz/odds/"

"""SQLite persistence for bookmakers, events, snapshots and opportunities.

Survives restarts so a new process does not re-alert on opportunities it
already saw. Timestamps are stored as UTC ISO-8601 strings with fixed
microsecond precision, so string order equals time order.
"""

import json
import logging
import math
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from config import DB_PATH
from models import (
    AlertRecord, AlertSettings, ArbitrageCalculation, Bookmaker,
    NormalizedEvent, NormalizedOdds, OddsLeg, Opportunity, Quote,
    BOOKMAKER_KINDS, LATENCY_RISKS, OPPORTUNITY_STATUSES,
)

logger = logging.getLogger(__name__)

SCHEMA = [
    """CREATE TABLE IF NOT EXISTS bookmakers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        key TEXT UNIQUE NOT NULL,
        name TEXT NOT NULL,
        kind TEXT NOT NULL,
        commission REAL NOT NULL DEFAULT 0,
        reliability REAL NOT NULL DEFAULT 75,
        max_stake REAL NOT NULL DEFAULT 1000,
        supports_both_sides INTEGER NOT NULL DEFAULT 0,
        is_active INTEGER NOT NULL DEFAULT 1
    )""",
    """CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        external_id TEXT NOT NULL,
        source_api TEXT NOT NULL,
        sport_key TEXT NOT NULL,
        home_team TEXT NOT NULL,
        away_team TEXT NOT NULL,
        commence_time TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'scheduled',
        competition TEXT,
        UNIQUE (external_id, source_api)
    )""",
    """CREATE TABLE IF NOT EXISTS odds_snapshots (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id INTEGER NOT NULL REFERENCES events(id),
        bookmaker_id INTEGER NOT NULL REFERENCES bookmakers(id),
        market_type TEXT NOT NULL,
        odds_home REAL NOT NULL,
        odds_away REAL NOT NULL,
        odds_draw REAL,
        point REAL,
        odds_over REAL,
        odds_under REAL,
        liquidity REAL,
        captured_at TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_snapshots_captured ON odds_snapshots (captured_at)",
    """CREATE TABLE IF NOT EXISTS opportunities (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id INTEGER NOT NULL REFERENCES events(id),
        market_type TEXT NOT NULL,
        calculation TEXT NOT NULL,
        profit_percentage REAL NOT NULL,
        quality_score INTEGER NOT NULL,
        quality_grade TEXT NOT NULL,
        latency_risk TEXT NOT NULL,
        liquidity_score REAL NOT NULL,
        max_stake REAL NOT NULL,
        detected_at TEXT NOT NULL,
        expires_at TEXT,
        status TEXT NOT NULL DEFAULT 'active'
    )""",
    "CREATE INDEX IF NOT EXISTS idx_opportunities_status ON opportunities (status, detected_at)",
    """CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT
    )""",
    """CREATE TABLE IF NOT EXISTS alerts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        opportunity_id INTEGER,
        channel TEXT NOT NULL,
        status TEXT NOT NULL,
        error TEXT,
        sent_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS sync_state (
        provider TEXT PRIMARY KEY,
        last_sync_at TEXT,
        last_success INTEGER,
        last_duration_ms REAL,
        consecutive_failures INTEGER NOT NULL DEFAULT 0,
        total_syncs INTEGER NOT NULL DEFAULT 0
    )""",
]

DEFAULT_BOOKMAKERS = [
    Bookmaker("polymarket", "Polymarket", "prediction_market", commission=0.02,
              reliability=85, max_stake=5000, supports_both_sides=True),
    Bookmaker("draftkings", "DraftKings", "bookmaker", reliability=80),
    Bookmaker("fanduel", "FanDuel", "bookmaker", reliability=80),
    Bookmaker("betmgm", "BetMGM", "bookmaker", reliability=75),
    Bookmaker("pointsbet", "PointsBet", "bookmaker", reliability=70),
    Bookmaker("williamhill_us", "William Hill", "bookmaker", reliability=75),
]


def _ts(dt: Optional[datetime]) -> Optional[str]:
    """Naive datetimes are taken to be UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _check_setting(key: str, value: Any, default: Any) -> Any:
    """Coerce a settings value to the type of its default, or raise ValueError."""
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ValueError(f"{key} must be true or false")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{key} must be a number")
        if not math.isfinite(value) or value < 0:
            raise ValueError(f"{key} must be a finite number >= 0")
        return float(value)
    if isinstance(default, list):
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ValueError(f"{key} must be a list of strings")
        return value
    # str fields, and the optional quiet-hours bounds
    if value is None and default is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    if key == "max_latency_risk" and value not in LATENCY_RISKS:
        raise ValueError(f"max_latency_risk must be one of {', '.join(LATENCY_RISKS)}")
    return value


def market_key(market_type: str, point: Optional[float]) -> str:
    """Quotes on different lines of a handicap/total are different markets."""
    if point is None:
        return market_type
    return f"{market_type}@{point:g}"


class Store:
    """Thin DAO over one SQLite file. Safe to share between threads."""

    def __init__(self, path: str = DB_PATH):
        self.path = path
        self._lock = threading.Lock()
        self.db = sqlite3.connect(path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self.db.execute("PRAGMA journal_mode=WAL")
        for stmt in SCHEMA:
            self.db.execute(stmt)
        self.db.commit()

    def close(self) -> None:
        self.db.close()

    def _write(self, sql: str, params=()) -> sqlite3.Cursor:
        with self._lock:
            cur = self.db.execute(sql, params)
            self.db.commit()
            return cur

    def _query(self, sql: str, params=()) -> List[sqlite3.Row]:
        with self._lock:
            return self.db.execute(sql, params).fetchall()

    # ── Bookmakers ────────────────────────────────────────────────

    @staticmethod
    def _bookmaker(row: sqlite3.Row) -> Bookmaker:
        return Bookmaker(
            key=row["key"], name=row["name"], kind=row["kind"],
            commission=row["commission"], reliability=row["reliability"],
            max_stake=row["max_stake"],
            supports_both_sides=bool(row["supports_both_sides"]),
            is_active=bool(row["is_active"]), id=row["id"],
        )

    def upsert_bookmaker(self, bm: Bookmaker) -> int:
        """Insert or update by key. Returns the row id."""
        if bm.kind not in BOOKMAKER_KINDS:
            raise ValueError(f"unknown bookmaker kind {bm.kind!r}")
        self._write(
            """INSERT INTO bookmakers
                   (key, name, kind, commission, reliability, max_stake,
                    supports_both_sides, is_active)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
                   name=excluded.name, kind=excluded.kind,
                   commission=excluded.commission,
                   reliability=excluded.reliability,
                   max_stake=excluded.max_stake,
                   supports_both_sides=excluded.supports_both_sides,
                   is_active=excluded.is_active""",
            (bm.key, bm.name, bm.kind, bm.commission, bm.reliability,
             bm.max_stake, int(bm.supports_both_sides), int(bm.is_active)),
        )
        bm.id = self._query("SELECT id FROM bookmakers WHERE key=?", (bm.key,))[0]["id"]
        return bm.id

    def ensure_bookmaker(self, key: str, name: str, kind: str = "bookmaker",
                         commission: float = 0.0) -> Bookmaker:
        """Existing bookmaker by key, or a new one with the given terms.

        kind and commission only apply on first registration.
        """
        existing = self.get_bookmaker(key)
        if existing is not None:
            return existing
        bm = Bookmaker(key=key, name=name or key, kind=kind, commission=commission)
        self.upsert_bookmaker(bm)
        logger.info("Registered new bookmaker %s", key)
        return bm

    def get_bookmaker(self, key: str) -> Optional[Bookmaker]:
        rows = self._query("SELECT * FROM bookmakers WHERE key=?", (key,))
        return self._bookmaker(rows[0]) if rows else None

    def list_bookmakers(self, active_only: bool = False) -> List[Bookmaker]:
        sql = "SELECT * FROM bookmakers"
        if active_only:
            sql += " WHERE is_active=1"
        return [self._bookmaker(r) for r in self._query(sql + " ORDER BY key")]

    def seed_defaults(self) -> int:
        """Create the default bookmakers that are missing. Existing rows are kept."""
        added = 0
        for bm in DEFAULT_BOOKMAKERS:
            if self.get_bookmaker(bm.key) is None:
                self.upsert_bookmaker(Bookmaker(**{**bm.__dict__, "id": None}))
                added += 1
        if added:
            logger.info("Seeded %d default bookmakers", added)
        return added

    # ── Events ────────────────────────────────────────────────────

    @staticmethod
    def _event(row: sqlite3.Row) -> NormalizedEvent:
        return NormalizedEvent(
            external_id=row["external_id"], source_api=row["source_api"],
            sport_key=row["sport_key"], home_team=row["home_team"],
            away_team=row["away_team"], commence_time=_dt(row["commence_time"]),
            status=row["status"], competition=row["competition"],
        )

    def upsert_event(self, ev: NormalizedEvent) -> int:
        """Insert or refresh by (external_id, source_api). Returns the row id."""
        self._write(
            """INSERT INTO events
                   (external_id, source_api, sport_key, home_team, away_team,
                    commence_time, status, competition)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(external_id, source_api) DO UPDATE SET
                   sport_key=excluded.sport_key, home_team=excluded.home_team,
                   away_team=excluded.away_team,
                   commence_time=excluded.commence_time,
                   status=excluded.status, competition=excluded.competition""",
            (ev.external_id, ev.source_api, ev.sport_key, ev.home_team,
             ev.away_team, _ts(ev.commence_time), ev.status, ev.competition),
        )
        return self._query(
            "SELECT id FROM events WHERE external_id=? AND source_api=?",
            (ev.external_id, ev.source_api),
        )[0]["id"]

    def get_event(self, event_id: int) -> Optional[NormalizedEvent]:
        rows = self._query("SELECT * FROM events WHERE id=?", (event_id,))
        return self._event(rows[0]) if rows else None

    def list_events(
        self,
        source_api: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 200,
    ) -> List[Tuple[int, NormalizedEvent]]:
        """(id, event) pairs ordered by start time."""
        sql = "SELECT * FROM events WHERE 1=1"
        params: List[Any] = []
        if source_api:
            sql += " AND source_api=?"
            params.append(source_api)
        if since is not None:
            sql += " AND commence_time>=?"
            params.append(_ts(since))
        sql += " ORDER BY commence_time LIMIT ?"
        params.append(limit)
        return [(r["id"], self._event(r)) for r in self._query(sql, params)]

    # ── Odds snapshots ────────────────────────────────────────────

    def add_snapshot(self, event_id: int, bookmaker_id: int, odds: NormalizedOdds) -> int:
        cur = self._write(
            """INSERT INTO odds_snapshots
                   (event_id, bookmaker_id, market_type, odds_home, odds_away,
                    odds_draw, point, odds_over, odds_under, liquidity, captured_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (event_id, bookmaker_id, odds.market_type, odds.odds_home,
             odds.odds_away, odds.odds_draw, odds.point, odds.odds_over,
             odds.odds_under, odds.liquidity, _ts(odds.captured_at)),
        )
        return cur.lastrowid

    def recent_quotes(self, since: datetime) -> List[Tuple[int, str, Quote]]:
        """Snapshots captured at or after `since`, joined with their bookmaker.

        Returns (event_id, market_key, quote) rows, oldest first. Inactive
        bookmakers are excluded.
        """
        rows = self._query(
            """SELECT s.*, b.key AS bm_key, b.commission, b.reliability,
                      b.max_stake, b.supports_both_sides
               FROM odds_snapshots s JOIN bookmakers b ON b.id = s.bookmaker_id
               WHERE s.captured_at >= ? AND b.is_active = 1
               ORDER BY s.captured_at""",
            (_ts(since),),
        )
        out: List[Tuple[int, str, Quote]] = []
        for r in rows:
            quote = Quote(
                bookmaker_id=str(r["bookmaker_id"]),
                bookmaker_key=r["bm_key"],
                commission=r["commission"],
                odds_home=r["odds_home"],
                odds_away=r["odds_away"],
                odds_draw=r["odds_draw"],
                captured_at=_dt(r["captured_at"]),
                supports_both_sides=bool(r["supports_both_sides"]),
                reliability=r["reliability"],
                liquidity=r["liquidity"],
                max_stake=r["max_stake"],
            )
            out.append((r["event_id"], market_key(r["market_type"], r["point"]), quote))
        return out

    def prune_snapshots(self, before: datetime) -> int:
        cur = self._write("DELETE FROM odds_snapshots WHERE captured_at < ?", (_ts(before),))
        return cur.rowcount

    # ── Opportunities ─────────────────────────────────────────────

    @staticmethod
    def _opportunity(row: sqlite3.Row) -> Opportunity:
        data = json.loads(row["calculation"])
        for leg in ("best_odds_home", "best_odds_away", "best_odds_draw"):
            if data.get(leg) is not None:
                data[leg] = OddsLeg(**data[leg])
        return Opportunity(
            event_id=row["event_id"], market_type=row["market_type"],
            calculation=ArbitrageCalculation(**data),
            quality_score=row["quality_score"], quality_grade=row["quality_grade"],
            latency_risk=row["latency_risk"], liquidity_score=row["liquidity_score"],
            max_stake=row["max_stake"], detected_at=_dt(row["detected_at"]),
            expires_at=_dt(row["expires_at"]), status=row["status"], id=row["id"],
        )

    def create_opportunity(self, opp: Opportunity) -> int:
        cur = self._write(
            """INSERT INTO opportunities
                   (event_id, market_type, calculation, profit_percentage,
                    quality_score, quality_grade, latency_risk, liquidity_score,
                    max_stake, detected_at, expires_at, status)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (opp.event_id, opp.market_type, json.dumps(opp.calculation.to_dict()),
             opp.calculation.profit_percentage, opp.quality_score,
             opp.quality_grade, opp.latency_risk, opp.liquidity_score,
             opp.max_stake, _ts(opp.detected_at), _ts(opp.expires_at), opp.status),
        )
        opp.id = cur.lastrowid
        return opp.id

    def get_opportunity(self, opp_id: int) -> Optional[Opportunity]:
        rows = self._query("SELECT * FROM opportunities WHERE id=?", (opp_id,))
        return self._opportunity(rows[0]) if rows else None

    def list_opportunities(self, status: Optional[str] = "active", limit: int = 50) -> List[Opportunity]:
        """Newest first. status=None lists every status."""
        sql = "SELECT * FROM opportunities"
        params: List[Any] = []
        if status:
            sql += " WHERE status=?"
            params.append(status)
        sql += " ORDER BY detected_at DESC, id DESC LIMIT ?"
        params.append(limit)
        return [self._opportunity(r) for r in self._query(sql, params)]

    def find_active_opportunity(self, event_id: int, market_type: str) -> Optional[Opportunity]:
        rows = self._query(
            """SELECT * FROM opportunities
               WHERE event_id=? AND market_type=? AND status='active'
               ORDER BY detected_at DESC LIMIT 1""",
            (event_id, market_type),
        )
        return self._opportunity(rows[0]) if rows else None

    def update_opportunity_status(self, opp_id: int, status: str) -> bool:
        """Move an active opportunity to a terminal status.

        Returns False when the opportunity is missing or no longer active.
        Raises ValueError for an unknown status.
        """
        if status not in OPPORTUNITY_STATUSES or status == "active":
            raise ValueError(f"invalid opportunity status: {status!r}")
        cur = self._write(
            "UPDATE opportunities SET status=? WHERE id=? AND status='active'",
            (status, opp_id),
        )
        return cur.rowcount == 1

    def expire_opportunities(self, now: datetime) -> int:
        cur = self._write(
            """UPDATE opportunities SET status='expired'
               WHERE status='active' AND expires_at IS NOT NULL AND expires_at <= ?""",
            (_ts(now),),
        )
        if cur.rowcount:
            logger.info("Expired %d opportunities", cur.rowcount)
        return cur.rowcount

    def count_opportunities_since(self, since: datetime) -> int:
        return self._query(
            "SELECT COUNT(*) AS n FROM opportunities WHERE detected_at >= ?",
            (_ts(since),),
        )[0]["n"]

    # ── Settings ──────────────────────────────────────────────────

    def get_settings(self) -> AlertSettings:
        """Stored values layered over the defaults."""
        settings = AlertSettings()
        for r in self._query("SELECT key, value FROM settings"):
            if hasattr(settings, r["key"]):
                setattr(settings, r["key"], json.loads(r["value"]))
        return settings

    def update_settings(self, changes: Dict[str, Any]) -> AlertSettings:
        """Persist known fields. Unknown keys or mistyped values raise ValueError, nothing is written."""
        defaults = AlertSettings()
        unknown = [k for k in changes if not hasattr(defaults, k)]
        if unknown:
            raise ValueError(f"unknown settings: {', '.join(sorted(unknown))}")
        changes = {k: _check_setting(k, v, getattr(defaults, k)) for k, v in changes.items()}
        with self._lock:
            for key, value in changes.items():
                self.db.execute(
                    "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)",
                    (key, json.dumps(value)),
                )
            self.db.commit()
        return self.get_settings()

    # ── Alerts ────────────────────────────────────────────────────

    def record_alert(self, rec: AlertRecord) -> int:
        cur = self._write(
            """INSERT INTO alerts (opportunity_id, channel, status, error, sent_at)
               VALUES (?, ?, ?, ?, ?)""",
            (rec.opportunity_id, rec.channel, rec.status, rec.error, _ts(rec.sent_at)),
        )
        return cur.lastrowid

    def list_alerts(self, limit: int = 50) -> List[AlertRecord]:
        rows = self._query("SELECT * FROM alerts ORDER BY sent_at DESC, id DESC LIMIT ?", (limit,))
        return [
            AlertRecord(
                opportunity_id=r["opportunity_id"], channel=r["channel"],
                status=r["status"], error=r["error"], sent_at=_dt(r["sent_at"]),
            )
            for r in rows
        ]

    # ── Sync state ────────────────────────────────────────────────

    def update_sync_state(
        self, provider: str, success: bool, duration_ms: float,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or datetime.now(timezone.utc)
        self._write(
            """INSERT INTO sync_state
                   (provider, last_sync_at, last_success, last_duration_ms,
                    consecutive_failures, total_syncs)
               VALUES (?, ?, ?, ?, ?, 1)
               ON CONFLICT(provider) DO UPDATE SET
                   last_sync_at=excluded.last_sync_at,
                   last_success=excluded.last_success,
                   last_duration_ms=excluded.last_duration_ms,
                   consecutive_failures=CASE WHEN excluded.last_success=1
                       THEN 0 ELSE sync_state.consecutive_failures + 1 END,
                   total_syncs=sync_state.total_syncs + 1""",
            (provider, _ts(now), int(success), duration_ms, 0 if success else 1),
        )

    def list_sync_states(self) -> List[Dict[str, Any]]:
        rows = self._query("SELECT * FROM sync_state ORDER BY provider")
        out = []
        for r in rows:
            row = dict(r)
            row["last_success"] = bool(row["last_success"])
            out.append(row)
        return out

    # ── Dashboard ─────────────────────────────────────────────────

    def stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Counts and averages for the dashboard header."""
        now = now or datetime.now(timezone.utc)
        day_start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        active = self._query(
            """SELECT COUNT(*) AS n, AVG(profit_percentage) AS avg_profit,
                      MAX(profit_percentage) AS best_profit
               FROM opportunities WHERE status='active'"""
        )[0]
        by_status = {
            r["status"]: r["n"]
            for r in self._query("SELECT status, COUNT(*) AS n FROM opportunities GROUP BY status")
        }
        counts = self._query(
            """SELECT (SELECT COUNT(*) FROM events) AS events,
                      (SELECT COUNT(*) FROM bookmakers WHERE is_active=1) AS bookmakers,
                      (SELECT COUNT(*) FROM odds_snapshots) AS snapshots,
                      (SELECT COUNT(*) FROM alerts WHERE status='sent') AS alerts_sent"""
        )[0]
        return {
            "active_opportunities": active["n"],
            "avg_profit_percentage": active["avg_profit"] or 0.0,
            "best_profit_percentage": active["best_profit"] or 0.0,
            "opportunities_today": self.count_opportunities_since(day_start),
            "opportunities_by_status": by_status,
            "events": counts["events"],
            "bookmakers": counts["bookmakers"],
            "snapshots": counts["snapshots"],
            "alerts_sent": counts["alerts_sent"],
            "sync": self.list_sync_states(),
        }

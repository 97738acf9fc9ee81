"""Coordinates ingestion, detection and alerting.

One sync cycle pulls every configured source, stores events and odds
snapshots, runs the detection pass over recent quotes, persists new
opportunities and dispatches alerts for them.
"""

import logging
import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from config import (
    MAX_CONSECUTIVE_FAILURES, QUOTE_WINDOW_S, SNAPSHOT_RETENTION_HOURS, SYNC_INTERVAL_SECONDS,
)
from engine import ArbitrageEngine
from logger import log_alert, log_opportunity, log_skip, log_sync_summary
from models import NormalizedEvent, NormalizedOdds, Opportunity, SyncResult
from normalizer import group_quotes_by_market, match_event, validate_odds
from notifier import AlertDispatcher, should_alert
from scanner import detect_opportunities
from store import Store

logger = logging.getLogger(__name__)

ODDS_API = "the_odds_api"
POLYMARKET = "polymarket"

# Exchange keys as The Odds API reports them
EXCHANGE_KEYS = ("matchbook", "smarkets")


def _venue_kind(odds: NormalizedOdds) -> str:
    if odds.source_api == POLYMARKET:
        return "prediction_market"
    key = odds.bookmaker_key
    if "_ex_" in key or key in EXCHANGE_KEYS:
        return "exchange"
    return "bookmaker"


def _swap_sides(odds: NormalizedOdds) -> NormalizedOdds:
    return replace(odds, odds_home=odds.odds_away, odds_away=odds.odds_home)


class SyncService:
    """Periodic sync over a Store.

    Connectors are optional; a source without a connector is skipped.
    `run_full_sync` is serialized, so the HTTP API can trigger it while
    the background loop is running.
    """

    def __init__(
        self,
        store: Store,
        engine: Optional[ArbitrageEngine] = None,
        odds_api=None,
        polymarket=None,
        dispatcher: Optional[AlertDispatcher] = None,
        logfile: Optional[str] = None,
    ):
        self.store = store
        self.engine = engine or ArbitrageEngine()
        self.odds_api = odds_api
        self.polymarket = polymarket
        self.dispatcher = dispatcher
        self.logfile = logfile
        self.cycle = 0
        self.last_results: Dict[str, SyncResult] = {}
        self.last_opportunities: List[Opportunity] = []
        self._lock = threading.Lock()
        # Alerted stake per UTC day, checked against max_daily_exposure
        self._exposure: Dict[str, float] = {}

    def initialize(self) -> None:
        """Seed reference data. Safe to call on every start."""
        self.store.seed_defaults()
        logger.info(
            "Sync service ready (odds_api=%s, polymarket=%s, alerts=%s)",
            self.odds_api is not None, self.polymarket is not None,
            self.dispatcher is not None,
        )

    # ── Ingestion ─────────────────────────────────────────────────

    def _store_snapshot(self, event_id: int, odds: NormalizedOdds) -> bool:
        valid, errors = validate_odds(odds)
        if not valid:
            log_skip(
                self.logfile, self.cycle,
                f"{odds.bookmaker_key}:{odds.event_id}", "invalid_odds",
                {"errors": errors},
            )
            logger.debug("Rejected odds from %s: %s", odds.bookmaker_key, errors)
            return False
        kind = _venue_kind(odds)
        # Exchanges and markets charge on net winnings
        commission = self.engine.config.commission_default if kind != "bookmaker" else 0.0
        bookmaker = self.store.ensure_bookmaker(
            odds.bookmaker_key, odds.bookmaker_name, kind=kind, commission=commission,
        )
        self.store.add_snapshot(event_id, bookmaker.id, odds)
        return True

    def sync_odds_api(self) -> SyncResult:
        if self.odds_api is None:
            return SyncResult(provider=ODDS_API, success=False, errors=["not configured"])

        events, odds, result = self.odds_api.fetch_all()
        ids = {ev.external_id: self.store.upsert_event(ev) for ev in events}
        stored = 0
        for o in odds:
            event_id = ids.get(o.event_id)
            if event_id is not None and self._store_snapshot(event_id, o):
                stored += 1
        result.odds_processed = stored
        logger.info(
            "The Odds API: %d events, %d odds stored", len(ids), stored,
        )
        return result

    def sync_polymarket(self) -> SyncResult:
        """Store Polymarket quotes, attached to matching sportsbook events.

        A market that matches a stored sportsbook event is priced against
        that event (sides swapped when the names are reversed); otherwise
        it is kept under its own Polymarket event.
        """
        if self.polymarket is None:
            return SyncResult(provider=POLYMARKET, success=False, errors=["not configured"])

        events, odds, result = self.polymarket.fetch_all()
        since = datetime.now(timezone.utc) - timedelta(days=1)
        candidates = self.store.list_events(source_api=ODDS_API, since=since, limit=5000)
        quotes = {o.event_id: o for o in odds}

        stored = matched = 0
        for ev in events:
            quote = quotes.get(ev.external_id)
            if quote is None:
                continue
            link = match_event(ev, candidates)
            if link is not None:
                event_id, swapped = link
                matched += 1
                if swapped:
                    quote = _swap_sides(quote)
            else:
                event_id = self.store.upsert_event(ev)
            if self._store_snapshot(event_id, quote):
                stored += 1

        result.odds_processed = stored
        logger.info(
            "Polymarket: %d markets, %d matched to sportsbook events, %d odds stored",
            len(events), matched, stored,
        )
        return result

    # ── Detection ─────────────────────────────────────────────────

    def _within_exposure(self, opp: Opportunity, settings, now: datetime) -> bool:
        day = now.astimezone(timezone.utc).strftime("%Y-%m-%d")
        stake = min(opp.max_stake, settings.max_stake_per_bet)
        spent = self._exposure.get(day, 0.0)
        if spent + stake > settings.max_daily_exposure:
            return False
        self._exposure = {day: spent + stake}
        return True

    def _alert(self, opp: Opportunity, event: NormalizedEvent, settings, now: datetime) -> None:
        send, reason = should_alert(opp, settings, event, now)
        if send and not self._within_exposure(opp, settings, now):
            send, reason = False, "daily exposure reached"
        if not send:
            log_skip(self.logfile, self.cycle, f"opportunity:{opp.id}", reason)
            logger.debug("No alert for opportunity %s: %s", opp.id, reason)
            return
        for record in self.dispatcher.dispatch(opp, event, settings):
            self.store.record_alert(record)
            log_alert(self.logfile, record)

    def process_opportunities(self, now: Optional[datetime] = None) -> List[Opportunity]:
        """Detect on quotes from the last QUOTE_WINDOW_S; returns new opportunities.

        An event market that already has an active opportunity is not
        stored or alerted again.
        """
        now = now or datetime.now(timezone.utc)
        self.store.expire_opportunities(now)

        rows = self.store.recent_quotes(now - timedelta(seconds=QUOTE_WINDOW_S))
        grouped = group_quotes_by_market(rows)
        events: Dict[int, NormalizedEvent] = {}
        for event_id, _ in grouped:
            if event_id not in events:
                ev = self.store.get_event(event_id)
                if ev is not None:
                    events[event_id] = ev

        found = detect_opportunities(grouped, events, self.engine, now)
        settings = self.store.get_settings() if self.dispatcher is not None else None

        created: List[Opportunity] = []
        for opp in found:
            if self.store.find_active_opportunity(opp.event_id, opp.market_type) is not None:
                log_skip(
                    self.logfile, self.cycle,
                    f"event:{opp.event_id}:{opp.market_type}", "already_active",
                )
                continue
            self.store.create_opportunity(opp)
            created.append(opp)
            event = events[opp.event_id]
            log_opportunity(self.logfile, self.cycle, opp, event)
            if self.dispatcher is not None:
                self._alert(opp, event, settings, now)

        if created:
            logger.info("Stored %d new opportunities", len(created))
        return created

    # ── Cycles ────────────────────────────────────────────────────

    def run_full_sync(self, now: Optional[datetime] = None) -> Dict[str, SyncResult]:
        """One complete cycle. Returns the SyncResult per provider."""
        with self._lock:
            self.cycle += 1
            t0 = time.monotonic()
            results: Dict[str, SyncResult] = {}

            for provider, connector, sync in (
                (ODDS_API, self.odds_api, self.sync_odds_api),
                (POLYMARKET, self.polymarket, self.sync_polymarket),
            ):
                if connector is None:
                    continue
                result = sync()
                results[provider] = result
                self.store.update_sync_state(provider, result.success, result.duration_ms)

            created = self.process_opportunities(now)
            pruned = self.store.prune_snapshots(
                (now or datetime.now(timezone.utc)) - timedelta(hours=SNAPSHOT_RETENTION_HOURS)
            )
            if pruned:
                logger.debug("Pruned %d old snapshots", pruned)
            for result in results.values():
                result.opportunities_detected = len(created)

            total_ms = (time.monotonic() - t0) * 1000
            log_sync_summary(self.logfile, self.cycle, results, len(created), total_ms)
            logger.info(
                "Cycle %d done in %.0fms: %d new opportunities",
                self.cycle, total_ms, len(created),
            )
            self.last_results = results
            self.last_opportunities = created
            return results

    def run_forever(
        self,
        interval: float = SYNC_INTERVAL_SECONDS,
        max_cycles: Optional[int] = None,
        stop: Optional[threading.Event] = None,
        max_failures: int = MAX_CONSECUTIVE_FAILURES,
        on_cycle: Optional[Callable[[Dict[str, SyncResult], List[Opportunity]], None]] = None,
    ) -> str:
        """Sync every `interval` seconds until stopped. Returns the exit reason.

        A cycle fails when every configured source failed or the cycle
        raised; after `max_failures` failed cycles in a row the loop stops.
        """
        stop = stop or threading.Event()
        failures = 0
        cycles = 0

        while not stop.is_set():
            cycles += 1
            try:
                results = self.run_full_sync()
            except Exception:
                logger.exception("Sync cycle %d crashed", self.cycle)
                failed = True
            else:
                if on_cycle is not None:
                    on_cycle(results, self.last_opportunities)
                failed = bool(results) and not any(r.success for r in results.values())

            if failed:
                failures += 1
                logger.warning("Sync cycle failed (%d in a row)", failures)
                if failures >= max_failures:
                    logger.error("Circuit breaker: %d failed cycles, stopping", failures)
                    return "circuit_breaker"
            else:
                failures = 0

            if max_cycles is not None and cycles >= max_cycles:
                return "max_cycles"
            stop.wait(interval)

        return "stopped"

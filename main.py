"""Odds intelligence: cross-bookmaker arbitrage detection.

Pulls odds from The Odds API and head-to-head markets from Polymarket,
stores them in SQLite, detects arbitrage between venues and alerts on
new opportunities.

Usage:
    python main.py sync              # one cycle, then exit
    python main.py run               # sync every SYNC_INTERVAL_SECONDS
    python main.py serve             # HTTP API + background sync loop

Configure via .env file (see .env.example).
"""

import argparse
import logging
import threading
from typing import Dict, List

import config
from api import serve
from display import (
    print_cycle_header,
    print_no_opportunities,
    print_opportunity,
    print_session_summary,
    print_sync_results,
)
from engine import ArbitrageEngine
from logger import get_logfile_path, log_session_end, log_session_start, setup_logging
from models import Opportunity, SyncResult
from notifier import AlertDispatcher
from odds_api.client import OddsApiClient
from polymarket.clob import OrderbookReader
from polymarket.gamma import GammaClient
from store import Store
from sync_service import SyncService

main_logger = logging.getLogger(__name__)


def build_service(args: argparse.Namespace, logfile: str) -> SyncService:
    """Wire connectors, store and dispatcher from config and CLI flags."""
    odds_api = None
    if not args.no_odds_api:
        if config.ODDS_API_KEY:
            odds_api = OddsApiClient()
        else:
            main_logger.warning("ODDS_API_KEY not set; The Odds API disabled")

    polymarket = None
    if not args.no_polymarket:
        polymarket = GammaClient(orderbooks=OrderbookReader() if args.clob_depth else None)

    dispatcher = None if args.no_alerts else AlertDispatcher()
    service = SyncService(
        Store(args.db),
        ArbitrageEngine(config.EngineConfig.from_env()),
        odds_api=odds_api,
        polymarket=polymarket,
        dispatcher=dispatcher,
        logfile=logfile,
    )
    service.initialize()
    return service


def _print_settings(args: argparse.Namespace, service: SyncService) -> None:
    engine_cfg = service.engine.config
    print(f"\n{'=' * 60}")
    print("  ODDS INTELLIGENCE")
    print(f"{'=' * 60}")
    print(f"  Command:           {args.command}")
    print(f"  Database:          {args.db}")
    print(f"  The Odds API:      {'on' if service.odds_api else 'off'}")
    print(f"  Polymarket:        {'on' if service.polymarket else 'off'}")
    print(f"  Alerts:            {'on' if service.dispatcher else 'off'}")
    print(f"  Min profit:        {engine_cfg.min_profit_percentage * 100:.2f}%")
    print(f"  Slippage:          {engine_cfg.slippage_estimate * 100:.2f}%")
    print(f"  Max quote age:     {engine_cfg.max_latency_ms / 1000:.0f}s")
    print(f"  Sync interval:     {args.interval:.0f}s")
    print(f"{'=' * 60}")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Cross-bookmaker arbitrage detection")
    parser.add_argument("command", choices=["sync", "run", "serve"])
    parser.add_argument("--db", default=config.DB_PATH, help="SQLite database path")
    parser.add_argument("--interval", type=float, default=config.SYNC_INTERVAL_SECONDS)
    parser.add_argument("--max-cycles", type=int, default=None)
    parser.add_argument("--host", default=config.API_HOST)
    parser.add_argument("--port", type=int, default=config.API_PORT)
    parser.add_argument("--no-odds-api", action="store_true")
    parser.add_argument("--no-polymarket", action="store_true")
    parser.add_argument("--no-alerts", action="store_true")
    parser.add_argument("--clob-depth", action="store_true",
                        help="read CLOB books when a market reports no liquidity")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    logfile = get_logfile_path()
    service = build_service(args, logfile)
    _print_settings(args, service)

    log_session_start(logfile, {
        "command": args.command,
        "db": args.db,
        "interval": args.interval,
        "odds_api": service.odds_api is not None,
        "polymarket": service.polymarket is not None,
        "alerts": service.dispatcher is not None,
        "min_profit_percentage": service.engine.config.min_profit_percentage,
        "slippage_estimate": service.engine.config.slippage_estimate,
        "max_latency_ms": service.engine.config.max_latency_ms,
        "quote_window_s": config.QUOTE_WINDOW_S,
    })
    print(f"\n  Logging to: {logfile}")

    found: List[Opportunity] = []

    def on_cycle(results: Dict[str, SyncResult], created: List[Opportunity]) -> None:
        print_cycle_header(service.cycle)
        print_sync_results(results)
        if not created:
            print_no_opportunities()
        for opp in created:
            print_opportunity(opp, service.store.get_event(opp.event_id))
        found.extend(created)

    stop = threading.Event()
    exit_reason = "completed"
    try:
        if args.command == "sync":
            service.run_full_sync()
            on_cycle(service.last_results, service.last_opportunities)
        elif args.command == "run":
            print("  Press Ctrl+C to stop.\n")
            exit_reason = service.run_forever(
                args.interval, args.max_cycles, stop, on_cycle=on_cycle,
            )
        else:
            loop = threading.Thread(
                target=service.run_forever,
                args=(args.interval, args.max_cycles, stop),
                kwargs={"on_cycle": on_cycle},
                daemon=True,
            )
            loop.start()
            print(f"  API on http://{args.host}:{args.port}/api/health  (Ctrl+C to stop)\n")
            serve(args.host, args.port, service)
    except KeyboardInterrupt:
        exit_reason = "ctrl_c"
        print("\n\n  Shutdown: Ctrl+C received.")
    finally:
        stop.set()
        print(f"\n  Logs saved to: {logfile}")

    print_session_summary(service.cycle, found, exit_reason)
    log_session_end(logfile, exit_reason, {
        "cycles": service.cycle,
        "opportunities": len(found),
    })
    service.store.close()


if __name__ == "__main__":
    main()

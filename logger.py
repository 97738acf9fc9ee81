"""JSONL session log for sync and detection data."""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from config import LOG_DIR
from models import AlertRecord, NormalizedEvent, Opportunity, SyncResult

_logger = logging.getLogger(__name__)


def _utc_ts() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def get_logfile_path(log_dir: str = LOG_DIR) -> str:
    """Logfile path for a new session, creating the directory."""
    os.makedirs(log_dir, exist_ok=True)
    ts = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    return os.path.join(log_dir, f"odds_intel_{ts}.jsonl")


def append_log(path: Optional[str], row: dict) -> None:
    """Append a JSON line. A missing path disables session logging."""
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(row, default=str) + "\n")
    except OSError as e:
        _logger.error("Failed to write log: %s", e)


def log_session_start(logfile: Optional[str], config: Dict[str, Any]) -> None:
    append_log(logfile, {"log_type": "session_start", "ts": _utc_ts(), **config})


def log_sync_summary(
    logfile: Optional[str],
    cycle: int,
    results: Dict[str, SyncResult],
    opportunities: int,
    total_ms: float,
) -> None:
    """Per-cycle summary across providers."""
    append_log(logfile, {
        "log_type": "sync_summary",
        "ts": _utc_ts(),
        "cycle": cycle,
        "providers": {name: r.to_dict() for name, r in results.items()},
        "opportunities": opportunities,
        "total_ms": round(total_ms, 1),
    })


def log_opportunity(
    logfile: Optional[str],
    cycle: int,
    opp: Opportunity,
    event: Optional[NormalizedEvent] = None,
) -> None:
    row = {"log_type": "opportunity", "ts": _utc_ts(), "cycle": cycle}
    if event is not None:
        row["event_title"] = f"{event.home_team} vs {event.away_team}"
        row["sport_key"] = event.sport_key
    row.update(opp.to_dict())
    append_log(logfile, row)


def log_skip(
    logfile: Optional[str],
    cycle: int,
    subject: str,
    reason: str,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Why a quote, event or alert was passed over."""
    row: dict = {
        "log_type": "skip",
        "ts": _utc_ts(),
        "cycle": cycle,
        "subject": subject,
        "reason": reason,
    }
    if details:
        row.update(details)
    append_log(logfile, row)


def log_alert(logfile: Optional[str], record: AlertRecord) -> None:
    append_log(logfile, {
        "log_type": "alert",
        "ts": _utc_ts(),
        "opportunity_id": record.opportunity_id,
        "channel": record.channel,
        "status": record.status,
        "error": record.error,
    })


def log_session_end(logfile: Optional[str], reason: str, stats: Dict[str, Any]) -> None:
    append_log(logfile, {"log_type": "session_end", "ts": _utc_ts(), "reason": reason, **stats})


def setup_logging(level: int = logging.INFO) -> None:
    """Configure Python logging for the service."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Connection-pool chatter drowns the sync logs at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)

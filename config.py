"""Configuration loaded from environment variables."""

import os
from dataclasses import dataclass
from typing import List

from dotenv import load_dotenv

load_dotenv()

# --- The Odds API ---
ODDS_API_KEY: str = os.getenv("ODDS_API_KEY", "")
ODDS_API_BASE: str = os.getenv("ODDS_API_BASE", "https://api.the-odds-api.com/v4")
ODDS_API_REGIONS: str = os.getenv("ODDS_API_REGIONS", "us,uk,eu,au")
ODDS_API_MARKETS: str = os.getenv("ODDS_API_MARKETS", "h2h,spreads,totals")
# Comma-separated sport keys polled on every sync
ODDS_API_SPORTS: List[str] = [
    s.strip() for s in os.getenv(
        "ODDS_API_SPORTS",
        "mma_mixed_martial_arts,esports_cs2,esports_lol,tennis_atp",
    ).split(",") if s.strip()
]
# Free tier allows 1 request/second
ODDS_API_MIN_INTERVAL_S: float = float(os.getenv("ODDS_API_MIN_INTERVAL_S", "1.0"))

# --- Polymarket ---
POLY_GAMMA_BASE: str = os.getenv("POLY_GAMMA_BASE", "https://gamma-api.polymarket.com")
POLY_CLOB_BASE: str = os.getenv("POLY_CLOB_BASE", "https://clob.polymarket.com")
POLY_MIN_INTERVAL_S: float = float(os.getenv("POLY_MIN_INTERVAL_S", "0.5"))
POLY_MAX_PAGES: int = int(os.getenv("POLY_MAX_PAGES", "5"))

# --- Arbitrage engine ---
# Minimum arbitrage margin as a fraction (0.01 = 1%)
MIN_PROFIT_PCT: float = float(os.getenv("MIN_PROFIT_PCT", "0.01"))
COMMISSION_DEFAULT: float = float(os.getenv("COMMISSION_DEFAULT", "0.02"))
# Expected execution slippage, applied to profit only
SLIPPAGE_ESTIMATE: float = float(os.getenv("SLIPPAGE_ESTIMATE", "0.005"))
# Quotes older than this are not used for detection
MAX_LATENCY_MS: int = int(os.getenv("MAX_LATENCY_MS", "60000"))
DEFAULT_TOTAL_STAKE: float = float(os.getenv("DEFAULT_TOTAL_STAKE", "100"))

# --- Detection pass ---
# Snapshots captured within this window are grouped for detection
QUOTE_WINDOW_S: float = float(os.getenv("QUOTE_WINDOW_S", "300"))
# Snapshots older than this are deleted at the end of each cycle
SNAPSHOT_RETENTION_HOURS: float = float(os.getenv("SNAPSHOT_RETENTION_HOURS", "48"))
# Used when no leg reports liquidity
DEFAULT_LIQUIDITY_SCORE: float = float(os.getenv("DEFAULT_LIQUIDITY_SCORE", "50"))
# Dollar depth at which a leg counts as fully liquid (score 100)
REFERENCE_LIQUIDITY: float = float(os.getenv("REFERENCE_LIQUIDITY", "5000"))

# --- Sync loop ---
SYNC_INTERVAL_SECONDS: float = float(os.getenv("SYNC_INTERVAL_SECONDS", "60"))
MAX_CONSECUTIVE_FAILURES: int = int(os.getenv("MAX_CONSECUTIVE_FAILURES", "10"))

# --- Storage ---
DB_PATH: str = os.getenv("DB_PATH", "odds_intel.db")

# --- Logging ---
LOG_DIR: str = os.getenv("LOG_DIR", "logs")

# --- HTTP API ---
API_HOST: str = os.getenv("API_HOST", "127.0.0.1")
API_PORT: int = int(os.getenv("API_PORT", "8000"))

# --- Notifications ---
TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
EMAIL_API_KEY: str = os.getenv("EMAIL_API_KEY", "")
EMAIL_FROM: str = os.getenv("EMAIL_FROM", "alerts@oddsintelligence.com")
EMAIL_API_URL: str = os.getenv("EMAIL_API_URL", "https://api.resend.com/emails")


@dataclass(frozen=True)
class EngineConfig:
    """Knobs consumed by the arbitrage engine."""
    min_profit_percentage: float = 0.01
    commission_default: float = 0.02
    slippage_estimate: float = 0.005
    max_latency_ms: int = 60000
    default_total_stake: float = 100.0

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            min_profit_percentage=MIN_PROFIT_PCT,
            commission_default=COMMISSION_DEFAULT,
            slippage_estimate=SLIPPAGE_ESTIMATE,
            max_latency_ms=MAX_LATENCY_MS,
            default_total_stake=DEFAULT_TOTAL_STAKE,
        )

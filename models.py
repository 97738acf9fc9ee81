"""Data models for the odds intelligence dashboard."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


LATENCY_RISKS = ("low", "medium", "high")
OPPORTUNITY_STATUSES = ("active", "expired", "executed", "dismissed")
BOOKMAKER_KINDS = ("bookmaker", "exchange", "prediction_market")


@dataclass
class Bookmaker:
    """A quote source the engine can attribute a leg to."""
    key: str                 # stable key, e.g. "draftkings", "polymarket"
    name: str
    kind: str = "bookmaker"  # "bookmaker", "exchange", "prediction_market"
    commission: float = 0.0
    reliability: float = 75.0    # 0-100
    max_stake: float = 1000.0    # per-bet limit in currency units
    # Both outcomes of one market may be taken on this venue
    supports_both_sides: bool = False
    is_active: bool = True
    id: Optional[int] = None


@dataclass
class NormalizedEvent:
    """An event as delivered by a connector, before persistence."""
    external_id: str
    source_api: str          # "the_odds_api", "polymarket", "manual"
    sport_key: str
    home_team: str
    away_team: str
    commence_time: datetime
    status: str = "scheduled"    # "scheduled", "live", "ended", "cancelled"
    competition: Optional[str] = None


@dataclass
class NormalizedOdds:
    """One bookmaker's prices for one market of one event."""
    event_id: str            # external id of the event
    bookmaker_key: str
    bookmaker_name: str
    market_type: str         # "h2h", "spreads", "totals"
    odds_home: float
    odds_away: float
    captured_at: datetime
    source_api: str
    odds_draw: Optional[float] = None
    point: Optional[float] = None
    odds_over: Optional[float] = None
    odds_under: Optional[float] = None
    liquidity: Optional[float] = None    # dollar depth, when the source reports it


@dataclass(frozen=True)
class Quote:
    """Engine input: a priced market tagged with its bookmaker."""
    bookmaker_id: str
    bookmaker_key: str
    commission: float
    odds_home: float
    odds_away: float
    captured_at: datetime
    odds_draw: Optional[float] = None
    supports_both_sides: bool = False
    reliability: float = 75.0
    liquidity: Optional[float] = None
    max_stake: Optional[float] = None


@dataclass
class OddsLeg:
    """Best price for one outcome and the bookmaker offering it."""
    odds: float
    bookmaker_id: str = ""
    bookmaker_key: str = ""


@dataclass
class ArbitrageCalculation:
    """Result of evaluating one set of competing prices."""
    total_implied_prob: float
    arbitrage_margin: float      # 1 - total_implied_prob
    profit_percentage: float     # arbitrage_margin / total_implied_prob
    is_arbitrage: bool
    best_odds_home: OddsLeg
    best_odds_away: OddsLeg
    stake_home: float
    stake_away: float
    expected_profit: float
    commission_adjusted: float   # sum of leg commissions
    slippage_estimate: float
    adjusted_profit: float       # expected_profit after slippage
    total_stake: float = 100.0
    best_odds_draw: Optional[OddsLeg] = None
    stake_draw: Optional[float] = None

    @property
    def is_three_way(self) -> bool:
        return self.best_odds_draw is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Opportunity:
    """A detected arbitrage, annotated for storage and alerting."""
    event_id: int
    market_type: str
    calculation: ArbitrageCalculation
    quality_score: int
    quality_grade: str
    latency_risk: str
    liquidity_score: float
    max_stake: float
    detected_at: datetime
    expires_at: Optional[datetime] = None
    status: str = "active"
    id: Optional[int] = None

    @property
    def is_three_way(self) -> bool:
        return self.calculation.is_three_way

    def to_dict(self) -> Dict[str, Any]:
        calc = self.calculation
        row: Dict[str, Any] = {
            "id": self.id,
            "event_id": self.event_id,
            "market_type": self.market_type,
            "is_three_way": self.is_three_way,
            "status": self.status,
            "quality_score": self.quality_score,
            "quality_grade": self.quality_grade,
            "latency_risk": self.latency_risk,
            "liquidity_score": self.liquidity_score,
            "max_stake": self.max_stake,
            "detected_at": _iso(self.detected_at),
            "expires_at": _iso(self.expires_at),
        }
        row.update(calc.to_dict())
        return row

    def __str__(self) -> str:
        calc = self.calculation
        return (
            f"Arb: event {self.event_id} {self.market_type} | "
            f"Legs: {3 if self.is_three_way else 2} | "
            f"Margin: {calc.arbitrage_margin * 100:.2f}% | "
            f"Profit: ${calc.expected_profit:.2f} | "
            f"Grade: {self.quality_grade} ({self.quality_score})"
        )


@dataclass
class SyncResult:
    """Outcome of one connector sync."""
    provider: str
    success: bool = True
    events_processed: int = 0
    odds_processed: int = 0
    opportunities_detected: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        row = asdict(self)
        row["timestamp"] = _iso(self.timestamp)
        return row


@dataclass
class AlertSettings:
    """User alert preferences, stored as a single settings row."""
    min_margin: float = 0.02
    max_latency_risk: str = "medium"
    min_liquidity: float = 30.0
    sports_filter: List[str] = field(default_factory=list)
    markets_filter: List[str] = field(default_factory=list)
    bookmakers_filter: List[str] = field(default_factory=list)
    max_stake_per_bet: float = 100.0
    max_daily_exposure: float = 1000.0
    telegram_enabled: bool = False
    telegram_chat_id: str = ""
    email_enabled: bool = False
    email_address: str = ""
    webhook_enabled: bool = False
    webhook_url: str = ""
    quiet_hours_start: Optional[str] = None  # "HH:MM"
    quiet_hours_end: Optional[str] = None
    timezone: str = "Europe/Madrid"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AlertRecord:
    """Result of sending one opportunity to one channel."""
    opportunity_id: Optional[int]
    channel: str             # "telegram", "email", "webhook"
    status: str              # "sent", "failed"
    error: Optional[str] = None
    sent_at: datetime = field(default_factory=utc_now)

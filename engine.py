"""Arbitrage calculation engine for 2-way and 3-way markets.

Converts competing decimal prices into commission-adjusted implied
probabilities, decides whether the best combination locks in a profit,
and splits a total stake so every outcome pays the same. Also scores
detected opportunities and estimates how long they stay usable.

All methods are pure: an engine only holds its EngineConfig, so one
instance can be shared across threads or built per call.

    prob_i   = (1 / odds_i) / (1 - commission_i)
    total    = sum(prob_i)
    margin   = 1 - total
    profit   = margin / total
    stake_i  = total_stake * prob_i / total
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Tuple

from config import EngineConfig
from models import ArbitrageCalculation, OddsLeg, Quote

logger = logging.getLogger(__name__)

LATENCY_PENALTY = {"low": 0, "medium": 10, "high": 25}

# Base lifetime of an opportunity by market volatility
EXPIRATION_WINDOWS = {
    "low": timedelta(minutes=5),
    "medium": timedelta(minutes=2),
    "high": timedelta(seconds=30),
}

# (lower bound inclusive, grade), checked top-down
QUALITY_GRADES = [(80, "A"), (65, "B"), (50, "C"), (35, "D")]

LOW_LATENCY_MS = 10_000
MEDIUM_LATENCY_MS = 30_000


class InvalidInput(ValueError):
    """Odds, commission, score or timestamp the engine cannot price."""


def _check_finite(name: str, value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInput(f"{name} must be a number, got {value!r}")
    if not math.isfinite(value):
        raise InvalidInput(f"{name} must be finite, got {value!r}")
    return float(value)


def _check_odds(name: str, odds) -> float:
    odds = _check_finite(name, odds)
    if odds <= 1.0:
        raise InvalidInput(f"{name} must be > 1.0, got {odds}")
    return odds


def _check_commission(name: str, commission) -> float:
    commission = _check_finite(name, commission)
    if not 0.0 <= commission < 1.0:
        raise InvalidInput(f"{name} must be in [0, 1), got {commission}")
    return commission


def _check_score(name: str, score) -> float:
    score = _check_finite(name, score)
    if not 0.0 <= score <= 100.0:
        raise InvalidInput(f"{name} must be in [0, 100], got {score}")
    return score


@dataclass
class BestOddsSelection:
    """Winning quote per outcome for one event market."""
    best_home: Quote
    best_away: Quote
    best_draw: Optional[Quote] = None
    is_three_way: bool = False


@dataclass
class StakeLimits:
    """Per-leg bookmaker stake limits in currency units."""
    home: float
    away: float
    draw: Optional[float] = None


def _id_order(bookmaker_id) -> Tuple[int, int, str]:
    """Numeric ids compare as numbers and sort before non-numeric ones."""
    text = str(bookmaker_id)
    if text.isdigit():
        return (0, int(text), text)
    return (1, 0, text)


def _best_quote(quotes: Sequence[Quote], price) -> Quote:
    """Highest-priced quote; ties go to the lowest bookmaker_id."""
    ordered = sorted(quotes, key=lambda q: _id_order(q.bookmaker_id))
    best = ordered[0]
    for q in ordered[1:]:
        if price(q) > price(best):
            best = q
    return best


class ArbitrageEngine:
    """Stateless arbitrage calculator configured by an EngineConfig."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    # ------------------------------------------------------------------
    # Probability & margin primitives
    # ------------------------------------------------------------------

    def implied_probability(self, odds: float) -> float:
        """Implied probability of decimal odds; 0 for odds <= 1."""
        odds = _check_finite("odds", odds)
        if odds <= 1.0:
            return 0.0
        return 1.0 / odds

    def apply_commission(self, prob: float, commission: float) -> float:
        """Inflate a probability by the venue's commission on winnings.

        Paying commission c on a price is the same as being offered
        odds * (1 - c), i.e. probability prob / (1 - c).
        """
        prob = _check_finite("prob", prob)
        commission = _check_commission("commission", commission)
        return prob / (1.0 - commission)

    def calculate_margin(
        self,
        odds_home: float,
        odds_away: float,
        odds_draw: Optional[float] = None,
    ) -> float:
        """Single-book overround: sum of raw implied probabilities minus 1."""
        total = self.implied_probability(odds_home) + self.implied_probability(odds_away)
        if odds_draw:
            total += self.implied_probability(odds_draw)
        return total - 1.0

    # ------------------------------------------------------------------
    # Arbitrage calculator
    # ------------------------------------------------------------------

    def _evaluate(
        self,
        legs: List[Tuple[str, float, float]],
        total_stake: Optional[float],
    ) -> Tuple[List[float], float, float, float, List[float], float]:
        """Shared N-leg math. legs is [(name, odds, commission), ...]."""
        if total_stake is None:
            total_stake = self.config.default_total_stake
        total_stake = _check_finite("total_stake", total_stake)
        if total_stake <= 0:
            raise InvalidInput(f"total_stake must be > 0, got {total_stake}")

        probs: List[float] = []
        for name, odds, commission in legs:
            odds = _check_odds(f"odds_{name}", odds)
            commission = _check_commission(f"commission_{name}", commission)
            probs.append(self.apply_commission(self.implied_probability(odds), commission))

        total_prob = sum(probs)
        if total_prob <= 0:
            raise InvalidInput("total implied probability is zero")

        margin = 1.0 - total_prob
        profit_pct = margin / total_prob

        # Last leg takes the remainder so stakes partition total_stake
        stakes = [total_stake * p / total_prob for p in probs[:-1]]
        stakes.append(total_stake - sum(stakes))

        return probs, total_prob, margin, profit_pct, stakes, total_stake

    def calculate_2way_arbitrage(
        self,
        odds_home: float,
        odds_away: float,
        commission_home: float = 0.0,
        commission_away: float = 0.0,
        total_stake: Optional[float] = None,
    ) -> ArbitrageCalculation:
        """Evaluate a two-outcome market.

        Example: home @ 2.15, away @ 1.95 gives 0.4651 + 0.5128 = 0.9779,
        a 2.21% margin, staked 47.56 / 52.44 out of 100.
        """
        _, total_prob, margin, profit_pct, stakes, total_stake = self._evaluate(
            [("home", odds_home, commission_home), ("away", odds_away, commission_away)],
            total_stake,
        )
        expected_profit = total_stake * profit_pct
        slippage = self.config.slippage_estimate

        return ArbitrageCalculation(
            total_implied_prob=total_prob,
            arbitrage_margin=margin,
            profit_percentage=profit_pct,
            is_arbitrage=margin > self.config.min_profit_percentage,
            best_odds_home=OddsLeg(odds=float(odds_home)),
            best_odds_away=OddsLeg(odds=float(odds_away)),
            stake_home=stakes[0],
            stake_away=stakes[1],
            expected_profit=expected_profit,
            commission_adjusted=float(commission_home) + float(commission_away),
            slippage_estimate=slippage,
            adjusted_profit=expected_profit * (1.0 - slippage),
            total_stake=total_stake,
        )

    def calculate_3way_arbitrage(
        self,
        odds_home: float,
        odds_draw: float,
        odds_away: float,
        commission_home: float = 0.0,
        commission_draw: float = 0.0,
        commission_away: float = 0.0,
        total_stake: Optional[float] = None,
    ) -> ArbitrageCalculation:
        """Evaluate a 1X2 market.

        Example: home @ 3.10, draw @ 3.40, away @ 2.90 gives
        0.323 + 0.294 + 0.345 = 0.962, a 3.8% margin.
        """
        _, total_prob, margin, profit_pct, stakes, total_stake = self._evaluate(
            [
                ("home", odds_home, commission_home),
                ("draw", odds_draw, commission_draw),
                ("away", odds_away, commission_away),
            ],
            total_stake,
        )
        expected_profit = total_stake * profit_pct
        slippage = self.config.slippage_estimate

        return ArbitrageCalculation(
            total_implied_prob=total_prob,
            arbitrage_margin=margin,
            profit_percentage=profit_pct,
            is_arbitrage=margin > self.config.min_profit_percentage,
            best_odds_home=OddsLeg(odds=float(odds_home)),
            best_odds_away=OddsLeg(odds=float(odds_away)),
            best_odds_draw=OddsLeg(odds=float(odds_draw)),
            stake_home=stakes[0],
            stake_draw=stakes[1],
            stake_away=stakes[2],
            expected_profit=expected_profit,
            commission_adjusted=(
                float(commission_home) + float(commission_draw) + float(commission_away)
            ),
            slippage_estimate=slippage,
            adjusted_profit=expected_profit * (1.0 - slippage),
            total_stake=total_stake,
        )

    # ------------------------------------------------------------------
    # Best-odds selection
    # ------------------------------------------------------------------

    def find_best_odds(self, quotes: Sequence[Quote]) -> BestOddsSelection:
        """Pick the highest price per outcome across quotes.

        The market is three-way as soon as any quote carries a positive
        draw price; only those quotes compete for the draw leg.
        """
        if not quotes:
            raise InvalidInput("find_best_odds needs at least one quote")

        best_home = _best_quote(quotes, lambda q: q.odds_home)
        best_away = _best_quote(quotes, lambda q: q.odds_away)

        with_draw = [q for q in quotes if q.odds_draw is not None and q.odds_draw > 0]
        if with_draw:
            return BestOddsSelection(
                best_home=best_home,
                best_away=best_away,
                best_draw=_best_quote(with_draw, lambda q: q.odds_draw),
                is_three_way=True,
            )
        return BestOddsSelection(best_home=best_home, best_away=best_away)

    def calculate_from_odds_list(
        self,
        quotes: Sequence[Quote],
        total_stake: Optional[float] = None,
    ) -> Optional[ArbitrageCalculation]:
        """Evaluate the best combination of quotes for one event market.

        Returns None when the quotes cannot form an executable set:
        fewer than two quotes, or best home and away at the same
        bookmaker unless that venue supports taking both sides.
        """
        if len(quotes) < 2:
            return None

        sel = self.find_best_odds(quotes)
        home, away, draw = sel.best_home, sel.best_away, sel.best_draw

        if home.bookmaker_id == away.bookmaker_id and not home.supports_both_sides:
            logger.debug(
                "Best home and away both at %s; skipping", home.bookmaker_key,
            )
            return None

        if sel.is_three_way and draw is not None:
            calc = self.calculate_3way_arbitrage(
                home.odds_home, draw.odds_draw, away.odds_away,
                home.commission, draw.commission, away.commission,
                total_stake=total_stake,
            )
            calc.best_odds_draw = OddsLeg(
                odds=draw.odds_draw,
                bookmaker_id=draw.bookmaker_id,
                bookmaker_key=draw.bookmaker_key,
            )
        else:
            calc = self.calculate_2way_arbitrage(
                home.odds_home, away.odds_away,
                home.commission, away.commission,
                total_stake=total_stake,
            )

        calc.best_odds_home = OddsLeg(
            odds=home.odds_home,
            bookmaker_id=home.bookmaker_id,
            bookmaker_key=home.bookmaker_key,
        )
        calc.best_odds_away = OddsLeg(
            odds=away.odds_away,
            bookmaker_id=away.bookmaker_id,
            bookmaker_key=away.bookmaker_key,
        )
        return calc

    # ------------------------------------------------------------------
    # Quality model
    # ------------------------------------------------------------------

    def calculate_quality_score(
        self,
        profit_percentage: float,
        liquidity_score: float,
        latency_risk: str,
        bookmaker_reliability: float,
    ) -> int:
        """Heuristic 0-100 score for a detected opportunity.

        Profit earns up to 40 points (saturating at 2%), liquidity up to
        25, bookmaker reliability up to 35; stale quotes lose 10 or 25.
        """
        profit_percentage = _check_finite("profit_percentage", profit_percentage)
        liquidity_score = _check_score("liquidity_score", liquidity_score)
        bookmaker_reliability = _check_score("bookmaker_reliability", bookmaker_reliability)
        if latency_risk not in LATENCY_PENALTY:
            raise InvalidInput(f"unknown latency risk {latency_risk!r}")

        profit_points = min(40.0, profit_percentage * 2000)
        liquidity_points = liquidity_score / 100 * 25
        reliability_points = bookmaker_reliability / 100 * 35

        total = profit_points + liquidity_points + reliability_points - LATENCY_PENALTY[latency_risk]
        return int(max(0, min(100, round(total))))

    def assign_quality_grade(self, score: float) -> str:
        score = _check_score("score", score)
        for lower, grade in QUALITY_GRADES:
            if score >= lower:
                return grade
        return "F"

    # ------------------------------------------------------------------
    # Risk estimators
    # ------------------------------------------------------------------

    def assess_latency_risk(
        self,
        captured_at: datetime,
        now: Optional[datetime] = None,
    ) -> str:
        """Bucket a quote's age: <10s low, <30s medium, else high."""
        if not isinstance(captured_at, datetime):
            raise InvalidInput(f"captured_at must be a datetime, got {captured_at!r}")
        if now is None:
            now = datetime.now(timezone.utc) if captured_at.tzinfo else datetime.now()
        try:
            age_ms = (now - captured_at) / timedelta(milliseconds=1)
        except TypeError as e:
            raise InvalidInput(f"cannot compare timestamps: {e}") from e

        if age_ms < LOW_LATENCY_MS:
            return "low"
        if age_ms < MEDIUM_LATENCY_MS:
            return "medium"
        return "high"

    def estimate_expiration(
        self,
        detected_at: datetime,
        event_start: datetime,
        volatility: str = "medium",
    ) -> datetime:
        """When an opportunity should stop being shown as valid.

        The volatility window is capped at 10% of the time left before
        the event starts; an event already under way expires immediately.
        """
        if volatility not in EXPIRATION_WINDOWS:
            raise InvalidInput(f"unknown volatility {volatility!r}")
        try:
            until_start = event_start - detected_at
        except TypeError as e:
            raise InvalidInput(f"cannot compare timestamps: {e}") from e

        window = min(EXPIRATION_WINDOWS[volatility], until_start * 0.1)
        if window < timedelta(0):
            window = timedelta(0)
        return detected_at + window

    def estimate_max_stake(self, liquidity_score: float, limits: StakeLimits) -> float:
        """Total stake ceiling: thinnest leg limit scaled by liquidity."""
        liquidity_score = _check_score("liquidity_score", liquidity_score)
        values = [limits.home, limits.away]
        if limits.draw is not None:
            values.append(limits.draw)
        for v in values:
            if _check_finite("stake limit", v) < 0:
                raise InvalidInput(f"stake limit must be >= 0, got {v}")
        return min(values) * liquidity_score / 100


def is_arbitrage_opportunity(
    odds_home: float,
    odds_away: float,
    odds_draw: Optional[float] = None,
) -> bool:
    """Quick raw check: do the prices sum to less than 100%?"""
    total = 1 / odds_home + 1 / odds_away
    if odds_draw:
        total += 1 / odds_draw
    return total < 1


def format_profit_percentage(value: float) -> str:
    return f"{value * 100:.2f}%"


def format_stake(value: float) -> str:
    return f"${value:.2f}"

"""Detection pass: turns grouped quotes into annotated opportunities.

For each event market, drops stale quotes, asks the engine for the best
combination and, when it is an arbitrage, scores how much to trust it.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from config import DEFAULT_LIQUIDITY_SCORE, REFERENCE_LIQUIDITY
from engine import ArbitrageEngine, InvalidInput, StakeLimits
from models import ArbitrageCalculation, NormalizedEvent, Opportunity, Quote
from normalizer import is_odds_fresh

logger = logging.getLogger(__name__)

# Bookmaker limit used when a venue does not publish one
FALLBACK_MAX_STAKE = 1000.0

CLOSED_STATUSES = ("ended", "cancelled")


def _leg_quotes(calc: ArbitrageCalculation, quotes: Sequence[Quote]) -> List[Quote]:
    """The quotes behind each leg of a calculation, home/away[/draw]."""
    by_id = {q.bookmaker_id: q for q in quotes}
    legs = [calc.best_odds_home, calc.best_odds_away]
    if calc.best_odds_draw is not None:
        legs.append(calc.best_odds_draw)
    return [by_id[leg.bookmaker_id] for leg in legs]


def liquidity_score(legs: Sequence[Quote]) -> float:
    """0-100 score of the thinnest leg against REFERENCE_LIQUIDITY.

    Legs without reported depth are ignored; if none report it the
    default score applies.
    """
    known = [q.liquidity for q in legs if q.liquidity is not None]
    if not known:
        return float(DEFAULT_LIQUIDITY_SCORE)
    return max(0.0, min(100.0, min(known) / REFERENCE_LIQUIDITY * 100))


def annotate(
    event_id: int,
    market_type: str,
    calc: ArbitrageCalculation,
    legs: Sequence[Quote],
    event: NormalizedEvent,
    engine: ArbitrageEngine,
    now: datetime,
) -> Opportunity:
    """Attach risk, quality, expiry and stake ceiling to a calculation."""
    oldest = min(q.captured_at for q in legs)
    latency_risk = engine.assess_latency_risk(oldest, now)
    liq = liquidity_score(legs)
    reliability = sum(q.reliability for q in legs) / len(legs)

    score = engine.calculate_quality_score(
        calc.profit_percentage, liq, latency_risk, reliability,
    )
    stakes = [q.max_stake if q.max_stake is not None else FALLBACK_MAX_STAKE for q in legs]
    limits = StakeLimits(
        home=stakes[0], away=stakes[1],
        draw=stakes[2] if len(stakes) > 2 else None,
    )

    return Opportunity(
        event_id=event_id,
        market_type=market_type,
        calculation=calc,
        quality_score=score,
        quality_grade=engine.assign_quality_grade(score),
        latency_risk=latency_risk,
        liquidity_score=liq,
        max_stake=engine.estimate_max_stake(liq, limits),
        detected_at=now,
        # Staler quotes are expected to move sooner
        expires_at=engine.estimate_expiration(now, event.commence_time, latency_risk),
    )


def detect_opportunities(
    grouped_quotes: Dict[Tuple[int, str], List[Quote]],
    events: Dict[int, NormalizedEvent],
    engine: ArbitrageEngine,
    now: Optional[datetime] = None,
) -> List[Opportunity]:
    """Scan every event market and return opportunities, best profit first.

    Args:
        grouped_quotes: Latest quote per bookmaker, keyed by
            (event_id, market_type).
        events: Stored events by id; markets of unknown or finished
            events are skipped.
        engine: Engine whose config supplies the staleness limit.
        now: Detection time, defaults to the current UTC time.
    """
    now = now or datetime.now(timezone.utc)
    max_age_ms = engine.config.max_latency_ms
    opportunities: List[Opportunity] = []
    stale = 0

    for (event_id, market_type), quotes in grouped_quotes.items():
        event = events.get(event_id)
        if event is None or event.status in CLOSED_STATUSES:
            continue

        fresh = [q for q in quotes if is_odds_fresh(q.captured_at, max_age_ms, now)]
        stale += len(quotes) - len(fresh)
        if len(fresh) < 2:
            continue

        try:
            calc = engine.calculate_from_odds_list(fresh)
            if calc is None or not calc.is_arbitrage:
                continue
            opp = annotate(
                event_id, market_type, calc, _leg_quotes(calc, fresh),
                event, engine, now,
            )
        except InvalidInput as e:
            logger.warning(
                "Skipping %s %s (event %d): %s",
                event.home_team, market_type, event_id, e,
            )
            continue

        logger.debug("Detected %s", opp)
        opportunities.append(opp)

    opportunities.sort(key=lambda o: o.calculation.profit_percentage, reverse=True)

    if stale:
        logger.info("Ignored %d stale quotes", stale)
    logger.info(
        "Found %d opportunities in %d event markets",
        len(opportunities), len(grouped_quotes),
    )
    return opportunities

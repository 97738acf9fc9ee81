"""Display helpers for terminal output with box-drawing characters."""

from typing import Dict, List, Optional

from engine import format_profit_percentage, format_stake
from models import NormalizedEvent, Opportunity, SyncResult
from normalizer import format_event_title

BOX_W = 68


def _box_top(label: str = "", w: int = BOX_W) -> str:
    if label:
        pad = w - len(label) - 2
        return "+- " + label + " " + "-" * max(pad, 0) + "+"
    return "+" + "-" * (w + 2) + "+"


def _box_mid(w: int = BOX_W) -> str:
    return "|" + "-" * (w + 2) + "|"


def _box_line(text: str, w: int = BOX_W) -> str:
    return "| " + text[:w].ljust(w) + " |"


def print_cycle_header(cycle: int) -> None:
    print(f"\n--- Sync #{cycle} {'---' * 10}")


def print_sync_results(results: Dict[str, SyncResult]) -> None:
    """One line per provider."""
    if not results:
        print("  No sources configured.")
        return
    for name, r in results.items():
        state = "ok" if r.success else "FAILED"
        print(
            f"  {name:<14} {state:<7} events={r.events_processed:<5} "
            f"odds={r.odds_processed:<6} {r.duration_ms:.0f}ms"
        )
        for err in r.errors[:3]:
            print(f"      ! {err[:90]}")


def print_opportunity(opp: Opportunity, event: Optional[NormalizedEvent] = None) -> None:
    """Print a compact summary of an arbitrage opportunity."""
    calc = opp.calculation
    title = format_event_title(event) if event else f"Event {opp.event_id}"
    print(f"\n{_box_top(title[:60])}")
    sport = event.sport_key if event else "?"
    print(_box_line(f"Sport: {sport}    Market: {opp.market_type}"))
    print(_box_line(f"Grade: {opp.quality_grade} ({opp.quality_score}/100)    Latency: {opp.latency_risk}"))
    print(_box_mid())

    legs = [("Home", calc.best_odds_home, calc.stake_home)]
    if calc.best_odds_draw is not None:
        legs.append(("Draw", calc.best_odds_draw, calc.stake_draw or 0.0))
    legs.append(("Away", calc.best_odds_away, calc.stake_away))
    for name, leg, stake in legs:
        book = leg.bookmaker_key[:20].ljust(20)
        print(_box_line(f"  {name:<5} {book}  {leg.odds:>7.2f}   stake {format_stake(stake)}"))

    print(_box_mid())
    print(_box_line(f"Implied:     {calc.total_implied_prob:.4f}   Margin: {calc.arbitrage_margin:.4f}"))
    print(_box_line(f"Profit:      {format_profit_percentage(calc.profit_percentage)}"
                    f" = {format_stake(calc.expected_profit)} on {format_stake(calc.total_stake)}"))
    print(_box_line(f"After slip:  {format_stake(calc.adjusted_profit)}"))
    print(_box_line(f"Max stake:   {format_stake(opp.max_stake)}   Liquidity: {opp.liquidity_score:.0f}/100"))
    print("+" + "-" * (BOX_W + 2) + "+")


def print_no_opportunities() -> None:
    print("  No new arbitrage opportunities.")


def print_session_summary(cycles: int, opportunities: List[Opportunity], exit_reason: str) -> None:
    """Print end-of-session summary."""
    print(f"\n{'=' * 72}")
    print("  SESSION SUMMARY")
    print(f"{'=' * 72}")
    print(f"  Exit reason:      {exit_reason}")
    print(f"  Sync cycles:      {cycles}")
    print(f"  Opportunities:    {len(opportunities)}")
    if opportunities:
        best = max(opportunities, key=lambda o: o.calculation.profit_percentage)
        avg = sum(o.calculation.profit_percentage for o in opportunities) / len(opportunities)
        print(f"  Best profit:      {format_profit_percentage(best.calculation.profit_percentage)}")
        print(f"  Average profit:   {format_profit_percentage(avg)}")
    print(f"{'=' * 72}")

"""Alert delivery for detected opportunities.

Channels: Telegram bot messages, email through the Resend HTTP API, and
generic JSON webhooks. The dispatcher applies the user's alert filters,
sends to every enabled channel and reports one AlertRecord per channel.
"""

import logging
from datetime import datetime, time as dtime, timezone
from html import escape
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests

from config import EMAIL_API_KEY, EMAIL_API_URL, EMAIL_FROM, TELEGRAM_BOT_TOKEN
from engine import format_profit_percentage, format_stake
from models import AlertRecord, AlertSettings, LATENCY_RISKS, NormalizedEvent, Opportunity
from normalizer import format_event_title, format_market_type, get_sport_category

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class NotificationError(RuntimeError):
    """A channel refused or failed to deliver an alert."""


def _post(session: requests.Session, url: str, payload: dict, headers=None, timeout: float = 15):
    try:
        r = session.post(url, json=payload, headers=headers, timeout=timeout)
    except requests.RequestException as e:
        raise NotificationError(str(e)) from e
    if not r.ok:
        raise NotificationError(f"HTTP {r.status_code}: {r.text[:200]}")
    return r


def _decode(r) -> dict:
    try:
        data = r.json()
    except ValueError as e:
        raise NotificationError(f"unreadable reply: {e}") from e
    if not isinstance(data, dict):
        raise NotificationError("unexpected reply")
    return data


def _legs(opp: Opportunity) -> List[Tuple[str, object, float]]:
    calc = opp.calculation
    legs = [("Home", calc.best_odds_home, calc.stake_home)]
    if calc.best_odds_draw is not None:
        legs.append(("Draw", calc.best_odds_draw, calc.stake_draw or 0.0))
    legs.append(("Away", calc.best_odds_away, calc.stake_away))
    return legs


def _market_label(market_type: str) -> str:
    base, _, line = market_type.partition("@")
    label = format_market_type(base)
    return f"{label} {line}" if line else label


# ── Formatting ───────────────────────────────────────────────────

def format_telegram_message(opp: Opportunity, event: NormalizedEvent) -> str:
    """Markdown message for the Telegram Bot API."""
    calc = opp.calculation
    lines = [
        "🚨 *ARBITRAGE OPPORTUNITY*",
        "",
        f"📊 *Event:* {format_event_title(event)}",
        f"🏆 *Sport:* {event.sport_key}",
        f"📈 *Market:* {_market_label(opp.market_type)}",
        "",
        f"💰 *Profit:* {format_profit_percentage(calc.profit_percentage)}",
        f"⏱️ *Margin:* {calc.arbitrage_margin:.4f}",
        f"🏅 *Quality:* {opp.quality_grade} ({opp.quality_score}/100)",
        "",
        "📌 *Best odds:*",
    ]
    for name, leg, _ in _legs(opp):
        lines.append(f"   {name}: {leg.odds:.2f} @ {leg.bookmaker_key}")
    lines.append("")
    lines.append(f"💵 *Stakes (total {format_stake(calc.total_stake)}):*")
    for name, leg, stake in _legs(opp):
        lines.append(f"   {name}: {format_stake(stake)} @ {leg.bookmaker_key}")
    lines += [
        "",
        f"💵 *Expected profit:* {format_stake(calc.expected_profit)}",
        f"⚡ *Latency risk:* {opp.latency_risk}",
        f"💧 *Liquidity:* {opp.liquidity_score:.0f}/100",
        f"⏰ Detected: {opp.detected_at:%Y-%m-%d %H:%M:%S %Z}",
    ]
    return "\n".join(lines)


def format_email(opp: Opportunity, event: NormalizedEvent) -> Dict[str, str]:
    """Subject, plain text and HTML bodies for an alert email."""
    calc = opp.calculation
    title = format_event_title(event)
    subject = (
        f"[{opp.quality_grade}] Arbitrage "
        f"{format_profit_percentage(calc.profit_percentage)} - {title}"
    )

    text_lines = [
        "ARBITRAGE OPPORTUNITY DETECTED",
        "",
        f"Event: {title}",
        f"Sport: {event.sport_key}",
        f"Market: {_market_label(opp.market_type)}",
        "",
        f"Profit: {format_profit_percentage(calc.profit_percentage)}",
        f"Margin: {calc.arbitrage_margin:.4f}",
        f"Quality: {opp.quality_grade} ({opp.quality_score}/100)",
        "",
        f"STAKES (total {format_stake(calc.total_stake)}):",
    ]
    rows = []
    for name, leg, stake in _legs(opp):
        text_lines.append(f"- {name}: {format_stake(stake)} at {leg.odds:.2f} @ {leg.bookmaker_key}")
        rows.append(
            f"<tr><td>{name}</td><td>{escape(leg.bookmaker_key)}</td>"
            f"<td style=\"text-align:right\">{leg.odds:.2f}</td>"
            f"<td style=\"text-align:right\">{format_stake(stake)}</td></tr>"
        )
    text_lines += [
        "",
        f"Expected profit: {format_stake(calc.expected_profit)}",
        f"Latency risk: {opp.latency_risk}",
        f"Liquidity: {opp.liquidity_score:.0f}/100",
        f"Detected: {opp.detected_at.isoformat()}",
    ]

    html = (
        "<html><body style=\"font-family:Arial,sans-serif;max-width:600px\">"
        f"<h2>Arbitrage opportunity: {escape(title)}</h2>"
        f"<p><strong>Profit: {format_profit_percentage(calc.profit_percentage)}</strong>"
        f" &middot; Quality {opp.quality_grade} ({opp.quality_score}/100)</p>"
        f"<p>Sport: {escape(event.sport_key)}<br>"
        f"Market: {escape(_market_label(opp.market_type))}<br>"
        f"Margin: {calc.arbitrage_margin:.4f}</p>"
        "<table style=\"width:100%;border-collapse:collapse\">"
        "<tr><th>Outcome</th><th>Bookmaker</th><th>Odds</th><th>Stake</th></tr>"
        + "".join(rows)
        + "</table>"
        f"<p>Expected profit: <strong>{format_stake(calc.expected_profit)}</strong></p>"
        f"<p>Latency risk: {opp.latency_risk}<br>Liquidity: {opp.liquidity_score:.0f}/100</p>"
        f"<p style=\"color:#6b7280;font-size:12px\">Detected: {opp.detected_at.isoformat()}</p>"
        "</body></html>"
    )
    return {"subject": subject, "text": "\n".join(text_lines), "html": html}


# ── Channels ─────────────────────────────────────────────────────

class TelegramNotifier:
    def __init__(self, bot_token: str, session: Optional[requests.Session] = None):
        if not bot_token:
            raise ValueError("Telegram bot token is required")
        self.api_url = f"{TELEGRAM_API}/bot{bot_token}"
        self._session = session or requests.Session()

    def send_message(self, chat_id: str, text: str) -> str:
        """Send a Markdown message. Returns the Telegram message id."""
        r = _post(self._session, f"{self.api_url}/sendMessage", {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "Markdown",
            "disable_web_page_preview": True,
        })
        data = _decode(r)
        if not data.get("ok"):
            raise NotificationError(data.get("description") or "Telegram rejected the message")
        try:
            return str(data["result"]["message_id"])
        except (KeyError, TypeError) as e:
            raise NotificationError(f"Telegram reply missing message id: {e}") from e


class EmailNotifier:
    """Sends mail through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        from_email: str = EMAIL_FROM,
        api_url: str = EMAIL_API_URL,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise ValueError("Email API key is required")
        self.api_key = api_key
        self.from_email = from_email
        self.api_url = api_url
        self._session = session or requests.Session()

    def send_email(self, to: str, subject: str, html: str, text: str) -> str:
        r = _post(
            self._session, self.api_url,
            {"from": self.from_email, "to": to, "subject": subject, "html": html, "text": text},
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        return str(_decode(r).get("id", ""))


class WebhookNotifier:
    def __init__(self, session: Optional[requests.Session] = None):
        self._session = session or requests.Session()

    def send_webhook(self, url: str, data: dict) -> None:
        _post(self._session, url, {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": "arbitrage_opportunity",
            "data": data,
        })


# ── Dispatch ─────────────────────────────────────────────────────

def _parse_hhmm(value: str) -> dtime:
    hours, minutes = value.split(":")
    return dtime(int(hours), int(minutes))


def in_quiet_hours(settings: AlertSettings, now: datetime) -> bool:
    """True when `now`, in the user's timezone, falls in the quiet window.

    The window may wrap midnight (22:00-07:00). Unset or malformed
    bounds disable it.
    """
    if not settings.quiet_hours_start or not settings.quiet_hours_end:
        return False
    try:
        start = _parse_hhmm(settings.quiet_hours_start)
        end = _parse_hhmm(settings.quiet_hours_end)
        tz = ZoneInfo(settings.timezone)
    except (ValueError, ZoneInfoNotFoundError) as e:
        logger.warning("Ignoring quiet hours: %s", e)
        return False

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(tz).time()
    if start <= end:
        return start <= local < end
    return local >= start or local < end


def should_alert(
    opp: Opportunity,
    settings: AlertSettings,
    event: Optional[NormalizedEvent] = None,
    now: Optional[datetime] = None,
) -> Tuple[bool, str]:
    """Apply the user's filters. Returns (send, reason when not sent)."""
    calc = opp.calculation
    if calc.arbitrage_margin < settings.min_margin:
        return False, "margin below minimum"

    if settings.max_latency_risk in LATENCY_RISKS:
        if LATENCY_RISKS.index(opp.latency_risk) > LATENCY_RISKS.index(settings.max_latency_risk):
            return False, "latency risk too high"

    if opp.liquidity_score < settings.min_liquidity:
        return False, "liquidity below minimum"

    if settings.sports_filter and event is not None:
        sports = {event.sport_key, get_sport_category(event.sport_key)}
        if not sports & set(settings.sports_filter):
            return False, "sport filtered"

    if settings.markets_filter:
        if opp.market_type.partition("@")[0] not in settings.markets_filter:
            return False, "market filtered"

    if settings.bookmakers_filter:
        books = {leg.bookmaker_key for _, leg, _ in _legs(opp)}
        if not books <= set(settings.bookmakers_filter):
            return False, "bookmaker filtered"

    if in_quiet_hours(settings, now or datetime.now(timezone.utc)):
        return False, "quiet hours"

    return True, ""


class AlertDispatcher:
    """Routes an opportunity to every enabled and configured channel."""

    def __init__(
        self,
        telegram_bot_token: str = TELEGRAM_BOT_TOKEN,
        email_api_key: str = EMAIL_API_KEY,
        email_from: str = EMAIL_FROM,
        session: Optional[requests.Session] = None,
    ):
        session = session or requests.Session()
        self.telegram = TelegramNotifier(telegram_bot_token, session) if telegram_bot_token else None
        self.email = EmailNotifier(email_api_key, email_from, session=session) if email_api_key else None
        self.webhook = WebhookNotifier(session)

    def _channels(self, settings: AlertSettings):
        if settings.telegram_enabled:
            if self.telegram is None or not settings.telegram_chat_id:
                yield "telegram", None, "Telegram not configured"
            else:
                yield "telegram", lambda opp, ev: self.telegram.send_message(
                    settings.telegram_chat_id, format_telegram_message(opp, ev)), None
        if settings.email_enabled:
            if self.email is None or not settings.email_address:
                yield "email", None, "Email not configured"
            else:
                def send_email(opp, ev):
                    body = format_email(opp, ev)
                    self.email.send_email(settings.email_address, body["subject"], body["html"], body["text"])
                yield "email", send_email, None
        if settings.webhook_enabled:
            if not settings.webhook_url:
                yield "webhook", None, "Webhook URL not configured"
            else:
                yield "webhook", lambda opp, ev: self.webhook.send_webhook(
                    settings.webhook_url, {**opp.to_dict(), "event": format_event_title(ev)}), None

    def dispatch(
        self,
        opp: Opportunity,
        event: NormalizedEvent,
        settings: AlertSettings,
    ) -> List[AlertRecord]:
        """Send to each enabled channel. A failing channel does not stop the others."""
        records: List[AlertRecord] = []
        for channel, send, config_error in self._channels(settings):
            if send is None:
                records.append(AlertRecord(opp.id, channel, "failed", config_error))
                continue
            try:
                send(opp, event)
            except NotificationError as e:
                logger.warning("%s alert for opportunity %s failed: %s", channel, opp.id, e)
                records.append(AlertRecord(opp.id, channel, "failed", str(e)))
                continue
            logger.info("%s alert sent for opportunity %s", channel, opp.id)
            records.append(AlertRecord(opp.id, channel, "sent"))
        return records

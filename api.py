"""JSON HTTP API for the dashboard.

Routes:
    GET    /api/health
    GET    /api/opportunities?status=active&limit=50
    PATCH  /api/opportunities/<id>        {"status": "executed"}
    GET    /api/events?source=polymarket&limit=200
    GET    /api/bookmakers?active=1
    GET    /api/settings
    PUT    /api/settings                  {"min_margin": 0.03, ...}
    GET    /api/alerts?limit=50
    GET    /api/sync                      last results and sync state
    POST   /api/sync                      run one cycle now
    GET    /api/stats
"""

import json
import logging
import re
from dataclasses import asdict
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse

from config import API_HOST, API_PORT, EMAIL_API_KEY, ODDS_API_KEY, TELEGRAM_BOT_TOKEN
from normalizer import format_event_title

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
OPPORTUNITY_PATH = re.compile(r"^/api/opportunities/(\d+)$")


def _json_default(obj):
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"{type(obj).__name__} is not JSON serializable")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ApiError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


class ApiHandler(BaseHTTPRequestHandler):
    """Routes requests to the SyncService bound by make_server."""

    service = None

    # ── Plumbing ──────────────────────────────────────────────────

    def _respond(self, code, data):
        body = json.dumps(data, default=_json_default).encode()
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()
        self.wfile.write(body)

    def _read_json(self) -> dict:
        length = int(self.headers.get("Content-Length", 0))
        raw = self.rfile.read(length) if length > 0 else b"{}"
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            raise ApiError(400, "Invalid JSON")
        if not isinstance(data, dict):
            raise ApiError(400, "Expected a JSON object")
        return data

    def _query(self):
        parsed = urlparse(self.path)
        return parsed.path.rstrip("/") or "/", {k: v[0] for k, v in parse_qs(parsed.query).items()}

    @staticmethod
    def _int_param(params, name, default):
        try:
            return max(1, min(1000, int(params.get(name, default))))
        except ValueError:
            raise ApiError(400, f"{name} must be an integer")

    def _dispatch(self, routes):
        path, params = self._query()
        try:
            for pattern, fn in routes:
                if isinstance(pattern, str):
                    if pattern == path:
                        return self._respond(200, fn(params))
                    continue
                m = pattern.match(path)
                if m is not None:
                    return self._respond(200, fn(params, *m.groups()))
            raise ApiError(404, f"No route for {self.command} {path}")
        except ApiError as e:
            self._respond(e.status, {"success": False, "error": str(e)})
        except Exception as e:
            logger.exception("Unhandled error on %s %s", self.command, path)
            self._respond(500, {"success": False, "error": str(e)})

    def do_GET(self):
        self._dispatch([
            ("/api/health", self.health),
            ("/api/opportunities", self.list_opportunities),
            ("/api/events", self.list_events),
            ("/api/bookmakers", self.list_bookmakers),
            ("/api/settings", self.get_settings),
            ("/api/alerts", self.list_alerts),
            ("/api/sync", self.sync_status),
            ("/api/stats", self.stats),
        ])

    def do_PUT(self):
        self._dispatch([("/api/settings", self.put_settings)])

    def do_PATCH(self):
        self._dispatch([(OPPORTUNITY_PATH, self.patch_opportunity)])

    def do_POST(self):
        self._dispatch([("/api/sync", self.trigger_sync)])

    def do_OPTIONS(self):
        self.send_response(204)
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, PUT, PATCH, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")
        self.end_headers()

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    # ── Routes ────────────────────────────────────────────────────

    def health(self, params):
        def configured(value):
            return "configured" if value else "not_configured"

        status, database = "ok", "connected"
        try:
            self.service.store.stats()
        except Exception as e:
            logger.error("Health check database error: %s", e)
            status, database = "degraded", "error"
        return {
            "status": status,
            "timestamp": _now(),
            "version": VERSION,
            "services": {
                "database": database,
                "odds_api": configured(ODDS_API_KEY),
                "telegram": configured(TELEGRAM_BOT_TOKEN),
                "email": configured(EMAIL_API_KEY),
            },
        }

    def _opportunity_row(self, opp):
        row = opp.to_dict()
        event = self.service.store.get_event(opp.event_id)
        if event is not None:
            row["event"] = {
                "title": format_event_title(event),
                "sport_key": event.sport_key,
                "commence_time": event.commence_time,
            }
        return row

    def list_opportunities(self, params):
        status = params.get("status", "active")
        if status == "all":
            status = None
        opps = self.service.store.list_opportunities(status, self._int_param(params, "limit", 50))
        return {"success": True, "data": [self._opportunity_row(o) for o in opps], "timestamp": _now()}

    def patch_opportunity(self, params, opp_id):
        status = self._read_json().get("status")
        store = self.service.store
        if store.get_opportunity(int(opp_id)) is None:
            raise ApiError(404, f"Opportunity {opp_id} not found")
        try:
            changed = store.update_opportunity_status(int(opp_id), status)
        except ValueError as e:
            raise ApiError(400, str(e))
        if not changed:
            raise ApiError(409, f"Opportunity {opp_id} is no longer active")
        return {"success": True, "data": self._opportunity_row(store.get_opportunity(int(opp_id)))}

    def list_events(self, params):
        rows = self.service.store.list_events(
            source_api=params.get("source"), limit=self._int_param(params, "limit", 200),
        )
        return {"success": True, "data": [{"id": eid, **asdict(ev)} for eid, ev in rows]}

    def list_bookmakers(self, params):
        active_only = params.get("active") in ("1", "true")
        return {"success": True, "data": [asdict(b) for b in self.service.store.list_bookmakers(active_only)]}

    def get_settings(self, params):
        return {"success": True, "data": self.service.store.get_settings().to_dict()}

    def put_settings(self, params):
        try:
            settings = self.service.store.update_settings(self._read_json())
        except ValueError as e:
            raise ApiError(400, str(e))
        return {"success": True, "data": settings.to_dict()}

    def list_alerts(self, params):
        alerts = self.service.store.list_alerts(self._int_param(params, "limit", 50))
        return {"success": True, "data": [asdict(a) for a in alerts]}

    def sync_status(self, params):
        return {
            "success": True,
            "cycle": self.service.cycle,
            "last_results": {k: r.to_dict() for k, r in self.service.last_results.items()},
            "state": self.service.store.list_sync_states(),
        }

    def trigger_sync(self, params):
        results = self.service.run_full_sync()
        return {
            "success": True,
            "results": {k: r.to_dict() for k, r in results.items()},
            "opportunities": len(self.service.last_opportunities),
            "timestamp": _now(),
        }

    def stats(self, params):
        return {"success": True, "data": self.service.store.stats()}


def make_server(host: str, port: int, service) -> ThreadingHTTPServer:
    """HTTP server bound to `service`. Port 0 picks a free port."""
    handler = type("BoundApiHandler", (ApiHandler,), {"service": service})
    return ThreadingHTTPServer((host, port), handler)


def serve(host: str = API_HOST, port: int = API_PORT, service=None) -> None:
    """Serve the API until interrupted."""
    server = make_server(host, port, service)
    logger.info("API listening on http://%s:%d", *server.server_address[:2])
    try:
        server.serve_forever()
    finally:
        server.server_close()

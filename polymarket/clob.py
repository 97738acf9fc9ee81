"""Polymarket CLOB API reader for orderbook depth.

Orderbook reads are public. Depth is only used to score liquidity when
the Gamma market record does not report it.
"""

import logging
from typing import List, Optional, Tuple

import requests

from config import POLY_CLOB_BASE, POLY_MIN_INTERVAL_S
from connector_base import ConnectorError, RateLimiter, decode_json, get_response

logger = logging.getLogger(__name__)


def _parse_levels(levels) -> List[Tuple[float, float]]:
    parsed: List[Tuple[float, float]] = []
    for lvl in levels or []:
        try:
            p = float(lvl.get("price"))
            s = float(lvl.get("size") or lvl.get("quantity") or lvl.get("amount"))
        except (AttributeError, TypeError, ValueError):
            continue
        if p > 0 and s > 0:
            parsed.append((p, s))
    return parsed


class OrderbookReader:
    """Reads ask-side books, remembering which endpoint shape works."""

    def __init__(
        self,
        base_url: str = POLY_CLOB_BASE,
        min_interval_s: float = POLY_MIN_INTERVAL_S,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.limiter = RateLimiter(min_interval_s)
        self._session = session or requests.Session()
        self._working_route: Optional[int] = None

    def _routes(self, token_id: str):
        return [
            (f"{self.base_url}/book", {"token_id": str(token_id)}),
            (f"{self.base_url}/book/{token_id}", None),
            (f"{self.base_url}/orderbook", {"token_id": str(token_id)}),
        ]

    def get_orderbook(self, token_id: str) -> Optional[List[Tuple[float, float]]]:
        """Ask levels for a token as (price, size), cheapest first.

        Tries the last working route first, then the others. Returns None
        when every route fails, so an unreadable book is not mistaken for
        an empty one.
        """
        routes = self._routes(token_id)
        order = list(range(len(routes)))
        if self._working_route is not None:
            order.remove(self._working_route)
            order.insert(0, self._working_route)

        for idx in order:
            url, params = routes[idx]
            try:
                data = decode_json(get_response(self._session, url, params, self.limiter, timeout=15))
            except ConnectorError as e:
                logger.debug("CLOB route %d failed: %s", idx, e)
                continue
            if not isinstance(data, dict):
                continue
            book = data.get("data", data)
            asks = sorted(_parse_levels(book.get("asks")))
            self._working_route = idx
            return asks

        logger.warning("No orderbook route answered for token %s", token_id)
        return None

    def estimate_depth(self, token_id: str, levels: int = 5) -> Optional[float]:
        """Dollar value resting on the best `levels` ask levels, None if unknown."""
        asks = self.get_orderbook(token_id)
        if asks is None:
            return None
        return sum(p * s for p, s in asks[:levels])

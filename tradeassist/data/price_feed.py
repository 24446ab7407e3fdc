"""
Live price sources.

The market monitor only needs one thing from a price source: the best
current price for a pair, or `None` when no price is available.  Two
implementations are provided:

- `HttpPriceFeed` queries a public ticker endpoint (Binance response
  shape: ``{"symbol": "BTCUSDT", "price": "64750.10"}``).
- `StaticPriceFeed` serves prices from an in-memory table.  Paper
  sessions and tests use it to drive entries deterministically.

Neither implementation raises on a failed lookup; the failure is logged
and reported as `None`, which the monitor treats as "skip this tick".
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Dict, Mapping, Optional
import requests

from ..config.schema import PriceFeedConfig


logger = logging.getLogger(__name__)


def normalize_pair(raw: str) -> str:
    """Normalise a pair as written in alerts into the exchange symbol.

    ``"#BTC/USDT"`` and ``"btc-usdt"`` both become ``"BTCUSDT"``.
    """
    if not raw:
        return ""
    return re.sub(r"[^A-Za-z0-9]", "", raw).upper()


class StaticPriceFeed:
    """Serve prices from a mutable in-memory table."""

    def __init__(self, prices: Optional[Mapping[str, float]] = None) -> None:
        self._lock = threading.Lock()
        self._prices: Dict[str, float] = {normalize_pair(k): float(v) for k, v in (prices or {}).items()}

    def set_price(self, pair: str, price: Optional[float]) -> None:
        """Set the price for `pair`; `None` removes it."""
        with self._lock:
            if price is None:
                self._prices.pop(normalize_pair(pair), None)
            else:
                self._prices[normalize_pair(pair)] = float(price)

    def get_price(self, pair: str) -> Optional[float]:
        with self._lock:
            return self._prices.get(normalize_pair(pair))


class HttpPriceFeed:
    """Fetch the last traded price from a public ticker endpoint.

    Parameters
    ----------
    base_url : str
        Ticker URL; the symbol is sent as the ``symbol`` query parameter.
    timeout : float
        Per-request timeout in seconds.
    session : requests.Session, optional
        Shared HTTP session.  One is created when omitted.
    """

    def __init__(self, base_url: str, timeout: float = 3.0, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def get_price(self, pair: str) -> Optional[float]:
        symbol = normalize_pair(pair)
        if not symbol:
            return None
        try:
            response = self.session.get(self.base_url, params={'symbol': symbol}, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Price fetch failed for %s: %s", symbol, exc)
            return None
        try:
            price = float(data['price'])
        except (KeyError, TypeError, ValueError):
            logger.warning("Unexpected ticker payload for %s: %s", symbol, data)
            return None
        return price if price > 0 else None


def build_price_feed(config: PriceFeedConfig):
    """Create the price source selected by the configuration."""
    if config.kind == "static":
        return StaticPriceFeed(config.static_prices)
    return HttpPriceFeed(config.base_url, timeout=config.timeout)

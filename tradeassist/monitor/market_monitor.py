"""
Market monitor.

Polls prices on a fixed interval and drives the lifecycle engine:

- signals waiting for their entry are executed once the market reaches
  the first entry price (LONG at or below it, SHORT at or above it);
- open positions get their current price and unrealized PnL refreshed.

Each distinct pair is fetched once per tick, and all fetches of a tick
run concurrently.  A fetch that raises or does not finish within the
tick interval counts as "no price" and the affected records are left
alone until the next tick.  Ticks never overlap.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from ..core.models import AuditCategory, SignalStatus
from ..engine.lifecycle import ActionResult, LifecycleEngine
from ..engine.state import AppState
from ..risk.calculator import entry_triggered


logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    """What a single monitor pass did."""
    prices: Dict[str, Optional[float]] = field(default_factory=dict)
    triggered: List[ActionResult] = field(default_factory=list)
    marked: List[str] = field(default_factory=list)
    skipped: bool = False


class MarketMonitor:
    """Recurring price check over waiting signals and open positions.

    Parameters
    ----------
    state : AppState
        Shared session state (read only; changes go through `engine`).
    engine : LifecycleEngine
        Engine used to execute triggered signals and mark positions.
    price_feed : object
        Anything with ``get_price(pair) -> float | None``.
    interval : float
        Seconds between ticks; also the fetch timeout of a tick.
    max_workers : int
        Size of the fetch thread pool.
    """

    def __init__(
        self,
        state: AppState,
        engine: LifecycleEngine,
        price_feed,
        interval: float = 5.0,
        max_workers: int = 8,
    ) -> None:
        self.state = state
        self.engine = engine
        self.price_feed = price_feed
        self.interval = interval
        self.max_workers = max_workers
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="price-fetch")

    # ------------------------------------------------------------------
    def fetch_prices(self, pairs: Iterable[str]) -> Dict[str, Optional[float]]:
        """Fetch every pair concurrently, waiting at most one interval."""
        unique = sorted(set(pairs))
        if not unique:
            return {}
        futures = {pair: self._executor.submit(self.price_feed.get_price, pair) for pair in unique}
        wait(list(futures.values()), timeout=self.interval)
        prices: Dict[str, Optional[float]] = {}
        for pair, future in futures.items():
            if not future.done():
                future.cancel()
                logger.warning("Price fetch for %s timed out after %.1fs", pair, self.interval)
                prices[pair] = None
                continue
            try:
                prices[pair] = future.result()
            except Exception as exc:
                logger.warning("Price fetch for %s failed: %s", pair, exc)
                prices[pair] = None
        return prices

    def tick(self) -> TickSummary:
        """Run one monitor pass.

        Returns a summary with ``skipped=True`` when a previous pass is
        still running.
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.debug("Previous tick still running; skipping")
            return TickSummary(skipped=True)
        try:
            waiting = [
                s for s in self.state.list_signals(SignalStatus.WAITING_FOR_ENTRY)
                if s.direction is not None and s.entry_prices
            ]
            positions = self.state.list_positions()
            summary = TickSummary()
            if not waiting and not positions:
                return summary
            summary.prices = self.fetch_prices([s.pair for s in waiting] + [p.pair for p in positions])

            for signal in waiting:
                price = summary.prices.get(signal.pair)
                if price is None:
                    continue
                if entry_triggered(signal.direction, signal.entry_price, price):
                    logger.info("Entry triggered for %s at %s (entry %s)", signal.pair, price, signal.entry_price)
                    self.engine.record(AuditCategory.SYSTEM, f"Entry triggered for {signal.pair}", f"Price hit: {price}")
                    summary.triggered.append(self.engine.execute(signal.id))

            for position in positions:
                price = summary.prices.get(position.pair)
                if price is None:
                    continue
                if self.engine.mark_position(position.id, price).ok:
                    summary.marked.append(position.id)
            return summary
        finally:
            self._tick_lock.release()

    # ------------------------------------------------------------------
    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Monitor tick failed")
            self._stop_event.wait(self.interval)

    def start(self) -> None:
        """Run ticks on a background thread until `stop()` is called."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="market-monitor", daemon=True)
        self._thread.start()
        logger.info("Market monitor started (interval=%.1fs)", self.interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Market monitor stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_forever(self) -> None:
        """Tick in the foreground until interrupted with Ctrl+C."""
        logger.info("Monitoring markets every %.1fs. Press Ctrl+C to stop.", self.interval)
        try:
            while True:
                started = time.monotonic()
                try:
                    self.tick()
                except Exception:
                    logger.exception("Monitor tick failed")
                time.sleep(max(0.0, self.interval - (time.monotonic() - started)))
        except KeyboardInterrupt:
            logger.info("Shutting down market monitor...")

    def close(self) -> None:
        """Stop the runner and release the fetch pool."""
        self.stop()
        self._executor.shutdown(wait=False)

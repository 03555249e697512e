"""
Background poller for the dashboard feeds

Each feed refreshes on its own interval. Realtime change notifications mark
the feeds that depend on the changed table as due, so they refresh on the
next tick instead of waiting out their interval.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..core.config import GateConfig, get_gate_config
from ..core.models import to_iso
from .activity import load_activity
from .exits import load_exit_efficiency
from .generations import load_generation_comparison, load_generation_progress
from .safety import load_live_safety
from .staleness import market_staleness
from .vitals import load_vitals

TICK_SECONDS = 1.0


@dataclass
class Feed:
    name: str
    loader: Callable[[], Any]
    interval: float
    tables: tuple = ()
    data: Any = None
    fetched_at: Optional[float] = None
    error: Optional[str] = None
    due: bool = True

    def age(self, now: float) -> Optional[float]:
        if self.fetched_at is None:
            return None
        return now - self.fetched_at

    def is_stale(self, now: float) -> bool:
        age = self.age(now)
        return age is None or age > 2 * self.interval

    def snapshot(self, now: float) -> dict:
        return {
            "feed": self.name,
            "data": self.data,
            "fetched_at": to_iso(datetime.fromtimestamp(self.fetched_at, timezone.utc))
            if self.fetched_at else None,
            "age_seconds": round(self.age(now), 1) if self.fetched_at else None,
            "stale": self.is_stale(now),
            "error": self.error,
            "interval_seconds": self.interval,
        }


class DashboardPoller:
    """Owns the feed cache and the thread that keeps it fresh"""

    def __init__(self, db, exchange=None, gate_config: GateConfig = None):
        self.db = db
        self.exchange = exchange
        self.gates = gate_config or get_gate_config()
        self.feeds: dict[str, Feed] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.heartbeat: Optional[float] = None
        self._register_default_feeds()

    def _register_default_feeds(self):
        g = self.gates
        self.register("safety", lambda: load_live_safety(self.db, self.exchange, g),
                      g.safety_poll_seconds, ("system_state", "system_config", "exchange_connections"))
        self.register("vitals", lambda: load_vitals(self.db),
                      g.vitals_poll_seconds, ("control_events", "agents"))
        self.register("activity", lambda: load_activity(self.db),
                      g.activity_poll_seconds, ("paper_orders", "generation_agents", "system_state"))
        self.register("generations", lambda: load_generation_comparison(self.db),
                      g.generations_poll_seconds, ("paper_orders", "generations"))
        self.register("progress", lambda: load_generation_progress(self.db),
                      g.generations_poll_seconds, ("paper_orders", "generation_agents", "system_state"))
        self.register("exits", lambda: load_exit_efficiency(self.db),
                      g.exits_poll_seconds, ("paper_orders", "market_data"))
        self.register("market", lambda: market_staleness(self.db.get_market_quotes(),
                                                         g.max_market_age_seconds),
                      g.market_poll_seconds, ("market_data",))

    def register(self, name: str, loader: Callable[[], Any], interval: float, tables: tuple = ()):
        with self._lock:
            self.feeds[name] = Feed(name=name, loader=loader, interval=interval, tables=tuple(tables))

    @property
    def watched_tables(self) -> list[str]:
        with self._lock:
            return sorted({t for feed in self.feeds.values() for t in feed.tables})

    def mark_due(self, table: str, event_type: str = None) -> list[str]:
        """Invalidate every feed that reads from table. Returns the feed names."""
        marked = []
        with self._lock:
            for feed in self.feeds.values():
                if table in feed.tables:
                    feed.due = True
                    marked.append(feed.name)
        return marked

    def refresh(self, name: str) -> bool:
        """Run one feed's loader. On failure the previous data is kept."""
        with self._lock:
            feed = self.feeds.get(name)
            if feed is None:
                raise KeyError(name)
            feed.due = False
            loader = feed.loader

        try:
            data = loader()
        except Exception as e:
            print(f"[POLL] {name} refresh failed: {e}")
            with self._lock:
                feed.error = str(e)
            return False

        with self._lock:
            feed.data = data
            feed.fetched_at = time.time()
            feed.error = None
        return True

    def due_feeds(self, now: float = None) -> list[str]:
        now = now or time.time()
        with self._lock:
            return [f.name for f in self.feeds.values()
                    if f.due or f.fetched_at is None or now - f.fetched_at >= f.interval]

    def tick(self, now: float = None) -> list[str]:
        refreshed = []
        for name in self.due_feeds(now):
            if self.refresh(name):
                refreshed.append(name)
        self.heartbeat = time.time()
        return refreshed

    def snapshot(self, name: str) -> Optional[dict]:
        with self._lock:
            feed = self.feeds.get(name)
            return feed.snapshot(time.time()) if feed else None

    def health(self) -> dict:
        now = time.time()
        with self._lock:
            feeds = {name: {"stale": f.is_stale(now), "error": f.error,
                            "age_seconds": round(f.age(now), 1) if f.fetched_at else None}
                     for name, f in self.feeds.items()}
        return {
            "running": self.is_running,
            "heartbeat_age_seconds": round(now - self.heartbeat, 1) if self.heartbeat else None,
            "feeds": feeds,
        }

    # === Lifecycle ===

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        print(f"[POLL] Started with feeds: {', '.join(self.feeds)}")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                print(f"[POLL] Tick error: {e}")
            self._stop.wait(TICK_SECONDS)
        print("[POLL] Stopped")

    def start(self):
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="dashboard-poller")
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

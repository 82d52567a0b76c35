"""
Thread-safe statistics collection for the Burrow DNS proxy.

Counters are updated from many handler threads at once, so every mutation
happens under a single lock. Snapshots copy the counters under the lock and
are formatted/logged outside it.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Dict

logger = logging.getLogger(__name__)

_PROCESS_START_TIME = time.time()


def get_process_uptime_seconds() -> float:
    """Return process uptime in seconds since this module was imported."""

    return max(0.0, time.time() - _PROCESS_START_TIME)


@dataclass(frozen=True)
class StatsSnapshot:
    """
    Immutable point-in-time snapshot of statistics for logging.

    Inputs (constructor):
        All fields provided by StatsCollector.snapshot()

    Outputs:
        Snapshot instance with read-only view of statistics
    """

    created_at: float
    uptime_seconds: float
    totals: Dict[str, int]
    strategies: Dict[str, int]
    upstreams: Dict[str, Dict[str, int]]
    rcodes: Dict[str, int]


class StatsCollector:
    """
    Brief: Thread-safe counters for queries, cache outcomes and upstreams.

    Inputs:
        None

    Outputs:
        StatsCollector instance

    Example:
        >>> collector = StatsCollector()
        >>> collector.record_query()
        >>> collector.record_cache_hit()
        >>> collector.snapshot().totals["cache_hits"]
        1
    """

    TOTAL_KEYS = (
        "queries",
        "cache_hits",
        "cache_misses",
        "cache_stale",
        "cache_errors",
        "decode_errors",
        "encode_errors",
        "aborted",
        "responses",
        "single_flight_shared",
    )

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reset_locked()

    def _reset_locked(self) -> None:
        self._totals: Dict[str, int] = {k: 0 for k in self.TOTAL_KEYS}
        self._strategies: Dict[str, int] = defaultdict(int)
        self._upstreams: Dict[str, Dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._rcodes: Dict[str, int] = defaultdict(int)

    def _incr(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._totals[key] = self._totals.get(key, 0) + delta

    def record_query(self) -> None:
        self._incr("queries")

    def record_cache_hit(self) -> None:
        self._incr("cache_hits")

    def record_cache_miss(self) -> None:
        self._incr("cache_misses")

    def record_cache_stale(self) -> None:
        self._incr("cache_stale")

    def record_cache_error(self) -> None:
        self._incr("cache_errors")

    def record_decode_error(self) -> None:
        self._incr("decode_errors")

    def record_encode_error(self) -> None:
        self._incr("encode_errors")

    def record_aborted(self) -> None:
        self._incr("aborted")

    def record_single_flight_shared(self) -> None:
        self._incr("single_flight_shared")

    def record_strategy(self, strategy: str) -> None:
        with self._lock:
            self._strategies[str(strategy)] += 1

    def record_response(self, rcode: str) -> None:
        with self._lock:
            self._totals["responses"] += 1
            self._rcodes[str(rcode)] += 1

    def record_upstream_result(self, upstream_id: str, outcome: str) -> None:
        """
        Record upstream resolution outcome.

        Inputs:
            upstream_id: Upstream identifier (DoH URL or "host:port")
            outcome: "success", "timeout", "error", "bad_status" or
                "bad_response"

        Outputs:
            None

        Example:
            >>> collector = StatsCollector()
            >>> collector.record_upstream_result("https://1.1.1.1/dns-query", "success")
        """
        with self._lock:
            self._upstreams[str(upstream_id)][str(outcome)] += 1

    def snapshot(self, reset: bool = False) -> StatsSnapshot:
        """
        Brief: Copy current counters, optionally resetting them.

        Inputs:
            reset: When True, counters are zeroed after copying.

        Outputs:
            StatsSnapshot
        """
        with self._lock:
            snap = StatsSnapshot(
                created_at=time.time(),
                uptime_seconds=get_process_uptime_seconds(),
                totals=dict(self._totals),
                strategies=dict(self._strategies),
                upstreams={k: dict(v) for k, v in self._upstreams.items()},
                rcodes=dict(self._rcodes),
            )
            if reset:
                self._reset_locked()
        return snap


def format_snapshot_json(snapshot: StatsSnapshot) -> str:
    """Render a snapshot as a single JSON line with sorted keys."""

    return json.dumps(asdict(snapshot), sort_keys=True)


class StatsReporter(threading.Thread):
    """
    Background daemon thread for periodic statistics logging.

    Inputs (constructor):
        collector: StatsCollector instance to snapshot
        interval_seconds: Seconds between log emissions (default 60)
        reset_on_log: Reset counters after each log (default False)
        log_level: Logging level name ("debug", "info", "warning", "error")
        logger_name: Logger name to use (default "burrow.stats")

    Outputs:
        StatsReporter thread instance (call start() to begin)
    """

    def __init__(
        self,
        collector: StatsCollector,
        interval_seconds: int = 60,
        reset_on_log: bool = False,
        log_level: str = "info",
        logger_name: str = "burrow.stats",
    ) -> None:
        super().__init__(daemon=True, name="StatsReporter")
        self.collector = collector
        self.interval_seconds = max(1, int(interval_seconds))
        self.reset_on_log = reset_on_log
        self.logger = logging.getLogger(logger_name)

        level_map = {
            "debug": logging.DEBUG,
            "info": logging.INFO,
            "warning": logging.WARNING,
            "error": logging.ERROR,
            "critical": logging.CRITICAL,
        }
        self.log_level = level_map.get(str(log_level).lower(), logging.INFO)

        self._stop_event = threading.Event()

    def emit(self) -> None:
        snapshot = self.collector.snapshot(reset=self.reset_on_log)
        self.logger.log(self.log_level, format_snapshot_json(snapshot))

    def run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.emit()
            except Exception as e:  # pragma: no cover
                self.logger.error("StatsReporter error: %s", e, exc_info=True)

    def stop(self, timeout: float = 5.0) -> None:
        """
        Signal reporter to stop and wait for thread to exit.

        Inputs:
            timeout: Maximum seconds to wait for thread join (default 5.0)

        Outputs:
            None
        """
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout=timeout)

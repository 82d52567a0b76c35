"""
Brief: Tests for burrow.stats collector, snapshot formatting and reporter.

Inputs:
  - None

Outputs:
  - None
"""

import json
import logging
import threading

from burrow.stats import StatsCollector, StatsReporter, format_snapshot_json


def test_collector_counts_and_snapshot():
    """
    Brief: Every record_* call lands in the matching snapshot bucket.

    Inputs:
      - a mix of query, cache, strategy, response and upstream events

    Outputs:
      - None: Asserts snapshot contents
    """
    c = StatsCollector()
    c.record_query()
    c.record_query()
    c.record_cache_hit()
    c.record_cache_miss()
    c.record_strategy("doh")
    c.record_response("NOERROR")
    c.record_response("NXDOMAIN")
    c.record_upstream_result("https://a.example/dns-query", "success")
    c.record_upstream_result("https://a.example/dns-query", "timeout")
    c.record_upstream_result("192.0.2.53:53", "success")

    snap = c.snapshot()
    assert snap.totals["queries"] == 2
    assert snap.totals["cache_hits"] == 1
    assert snap.totals["cache_misses"] == 1
    assert snap.totals["responses"] == 2
    assert snap.totals["aborted"] == 0
    assert snap.strategies == {"doh": 1}
    assert snap.rcodes == {"NOERROR": 1, "NXDOMAIN": 1}
    assert snap.upstreams == {
        "https://a.example/dns-query": {"success": 1, "timeout": 1},
        "192.0.2.53:53": {"success": 1},
    }
    assert snap.uptime_seconds >= 0


def test_snapshot_reset_zeroes_counters():
    c = StatsCollector()
    c.record_query()
    c.record_strategy("secondary")
    first = c.snapshot(reset=True)
    second = c.snapshot()
    assert first.totals["queries"] == 1
    assert second.totals["queries"] == 0
    assert second.strategies == {}


def test_snapshot_is_detached_from_collector():
    c = StatsCollector()
    snap = c.snapshot()
    c.record_query()
    assert snap.totals["queries"] == 0


def test_concurrent_increments():
    c = StatsCollector()

    def worker():
        for _ in range(500):
            c.record_query()
            c.record_upstream_result("u", "success")

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    snap = c.snapshot()
    assert snap.totals["queries"] == 4000
    assert snap.upstreams["u"]["success"] == 4000


def test_format_snapshot_json_is_sorted_single_line():
    c = StatsCollector()
    c.record_cache_stale()
    line = format_snapshot_json(c.snapshot())
    assert "\n" not in line
    data = json.loads(line)
    assert data["totals"]["cache_stale"] == 1
    assert list(data) == sorted(data)


def test_reporter_emit_logs_and_resets(caplog):
    c = StatsCollector()
    c.record_query()
    reporter = StatsReporter(c, interval_seconds=60, reset_on_log=True, log_level="warning")

    with caplog.at_level(logging.WARNING, logger="burrow.stats"):
        reporter.emit()

    assert reporter.log_level == logging.WARNING
    record = caplog.records[-1]
    assert record.name == "burrow.stats"
    assert json.loads(record.getMessage())["totals"]["queries"] == 1
    assert c.snapshot().totals["queries"] == 0


def test_reporter_stop_before_interval():
    reporter = StatsReporter(StatsCollector(), interval_seconds=3600)
    reporter.start()
    reporter.stop(timeout=2)
    assert not reporter.is_alive()

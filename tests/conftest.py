"""
Brief: Global pytest configuration: src/ on sys.path, per-test 10s timeout and
shared DNS builders.

Inputs:
  - None

Outputs:
  - None
"""

import logging
import os
import signal
import sys
from types import SimpleNamespace

import pytest
from dnslib import QTYPE, RCODE, RR, SOA, A, DNSRecord

# Ensure 'src' is on sys.path so 'burrow' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


# Install handler if supported on this platform
if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        yield


@pytest.fixture
def restore_root_logger():
    """
    Brief: Undo init_logging() side effects on the root logger after the test.

    Inputs:
      - None

    Outputs:
      - None: Drops handlers init_logging() installed and restores levels;
        pytest's own capture handlers are left alone
    """
    root = logging.getLogger()
    level = root.level
    urllib3_level = logging.getLogger("urllib3").level
    try:
        yield root
    finally:
        for h in list(root.handlers):
            if not type(h).__module__.startswith("_pytest"):
                root.removeHandler(h)
                h.close()
        root.setLevel(level)
        logging.getLogger("urllib3").setLevel(urllib3_level)
        logging.captureWarnings(False)


class FakeClock:
    """Manually advanced monotonic clock; sleep() advances it too."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = float(start)
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += float(seconds)


def build_query(qname="example.com", qtype="A", qid=0x1234) -> bytes:
    q = DNSRecord.question(qname, qtype)
    q.header.id = qid
    return q.pack()


def build_response(query_wire: bytes, ttls=(300,), qid=None, rcode=None) -> bytes:
    """Reply to ``query_wire`` with one A record per TTL in ``ttls``."""
    q = DNSRecord.parse(query_wire)
    r = q.reply()
    for i, ttl in enumerate(ttls):
        r.add_answer(
            RR(q.q.qname, QTYPE.A, rdata=A(f"192.0.2.{i + 1}"), ttl=int(ttl))
        )
    if rcode is not None:
        r.header.rcode = rcode
    if qid is not None:
        r.header.id = qid
    return r.pack()


def build_nxdomain(query_wire: bytes, soa_ttl=None, soa_minimum=60) -> bytes:
    q = DNSRecord.parse(query_wire)
    r = q.reply()
    r.header.rcode = RCODE.NXDOMAIN
    if soa_ttl is not None:
        r.add_auth(
            RR(
                "com.",
                QTYPE.SOA,
                rdata=SOA(
                    "a.gtld-servers.net.",
                    "nstld.verisign-grs.com.",
                    (1, 1800, 900, 604800, soa_minimum),
                ),
                ttl=int(soa_ttl),
            )
        )
    return r.pack()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def dns():
    """Brief: Wire-format builders shared by the test modules."""
    return SimpleNamespace(
        query=build_query, response=build_response, nxdomain=build_nxdomain
    )

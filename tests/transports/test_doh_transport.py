"""
Brief: Unit tests for DoH upstream transport using a local HTTP server stub.

Inputs:
  - None

Outputs:
  - None
"""

import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer, ThreadingHTTPServer

import pytest

from burrow.transports import UpstreamStatusError
from burrow.transports.doh import DoHError, doh_query, proxy_mapping


class _StubHandler(BaseHTTPRequestHandler):
    seen = []

    def do_POST(self):  # noqa: N802
        ln = int(self.headers.get("Content-Length", "0"))
        body = self.rfile.read(ln)
        _StubHandler.seen.append(
            {
                "path": self.path,
                "content_type": self.headers.get("Content-Type"),
                "accept": self.headers.get("Accept"),
                "user_agent": self.headers.get("User-Agent"),
            }
        )
        if self.path.startswith("/unavailable"):
            self.send_response(503)
            self.end_headers()
            return
        if self.path.startswith("/moved"):
            self.send_response(302)
            self.send_header("Location", "/dns-query")
            self.end_headers()
            return
        if self.path.startswith("/trickle"):
            self._trickle(body)
            return
        if self.path.startswith("/slow"):
            time.sleep(0.5)
        self.send_response(200)
        self.send_header("Content-Type", "application/dns-message")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _trickle(self, body):
        self.send_response(200)
        self.send_header("Content-Type", "application/dns-message")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        try:
            for i in range(len(body)):
                self.wfile.write(body[i : i + 1])
                self.wfile.flush()
                time.sleep(0.25)
        except OSError:
            # Client gave up.
            pass

    def log_message(self, fmt, *args):  # quiet
        return


@pytest.fixture(scope="module")
def stub_server():
    srv = ThreadingHTTPServer(("127.0.0.1", 0), _StubHandler)
    host, port = srv.server_address

    t = threading.Thread(target=srv.serve_forever, daemon=True)
    t.start()
    # Give it a moment to bind
    time.sleep(0.05)
    try:
        yield f"http://{host}:{port}"
    finally:
        srv.shutdown()
        srv.server_close()


def test_doh_post_roundtrip(stub_server):
    # 12-byte fake DNS header + payload
    query = b"\x12\x34" + b"x" * 10
    body, headers = doh_query(stub_server + "/dns-query", query, timeout_ms=500)
    assert body == query
    assert headers.get("content-type", "").startswith("application/dns-message")

    seen = _StubHandler.seen[-1]
    assert seen["content_type"] == "application/dns-message"
    assert seen["accept"] == "application/dns-message"
    assert seen["user_agent"].startswith("burrow/")


def test_doh_non_2xx_raises_status_error(stub_server):
    with pytest.raises(UpstreamStatusError) as excinfo:
        doh_query(stub_server + "/unavailable", b"\x00\x01", timeout_ms=500)
    assert excinfo.value.status == 503


def test_doh_redirect_is_not_followed(stub_server):
    with pytest.raises(UpstreamStatusError) as excinfo:
        doh_query(stub_server + "/moved", b"\x00\x01", timeout_ms=500)
    assert excinfo.value.status == 302


def test_doh_timeout_is_flagged(stub_server):
    with pytest.raises(DoHError) as excinfo:
        doh_query(stub_server + "/slow", b"\x00\x01", timeout_ms=100)
    assert excinfo.value.timed_out


def test_doh_connection_refused():
    # Bind then close to obtain a port nothing listens on.
    srv = HTTPServer(("127.0.0.1", 0), _StubHandler)
    port = srv.server_address[1]
    srv.server_close()
    with pytest.raises(DoHError) as excinfo:
        doh_query(f"http://127.0.0.1:{port}/dns-query", b"\x00\x01", timeout_ms=500)
    assert not excinfo.value.timed_out


def test_doh_rejects_unsupported_scheme():
    with pytest.raises(DoHError):
        doh_query("ftp://example.com/dns-query", b"\x00\x01")


def test_proxy_mapping():
    assert proxy_mapping("socks5h://127.0.0.1:1080") == {
        "http": "socks5h://127.0.0.1:1080",
        "https": "socks5h://127.0.0.1:1080",
    }
    assert proxy_mapping("") == {"http": None, "https": None}


def test_doh_deadline_covers_slow_body(stub_server):
    """
    Brief: A server trickling the body one byte at a time cannot stretch an
    attempt past timeout_ms, even though no single read stalls.

    Inputs:
      - 12-byte body sent at one byte per 0.25s, timeout_ms=500

    Outputs:
      - None: Asserts timed-out DoHError well before the body completes
    """
    started = time.monotonic()
    with pytest.raises(DoHError) as excinfo:
        doh_query(stub_server + "/trickle", b"\x12\x34" + b"z" * 10, timeout_ms=500)
    elapsed = time.monotonic() - started
    assert excinfo.value.timed_out
    assert elapsed < 1.5

"""
Brief: Unit tests for the threaded UDP listener.

Inputs:
  - None

Outputs:
  - None
"""

import socket
import threading

import pytest
from dnslib import DNSRecord

from burrow.servers.udp_server import DNSServer


class _EchoDispatcher:
    """Answers every query with a canned reply; drops datagrams starting 0xFF."""

    def __init__(self, dns):
        self.dns = dns
        self.clients = []

    def handle(self, data, client=None):
        self.clients.append(client)
        if data[:1] == b"\xff":
            return None
        return self.dns.response(data, ttls=(120,))


@pytest.fixture
def running_udp_server(dns):
    dispatcher = _EchoDispatcher(dns)
    server = DNSServer("127.0.0.1", 0, dispatcher)
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    try:
        yield server, dispatcher
    finally:
        server.shutdown()
        t.join(2)


def test_udp_server_roundtrip(running_udp_server, dns):
    server, dispatcher = running_udp_server
    host, port = server.address[:2]
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.settimeout(1)
        sock.sendto(dns.query("example.com", qid=0x2222), (host, port))
        data, _ = sock.recvfrom(4096)
        reply = DNSRecord.parse(data)
        assert reply.header.id == 0x2222
        assert reply.rr[0].ttl == 120
        assert dispatcher.clients[0][0] == "127.0.0.1"
    finally:
        sock.close()


def test_udp_server_sends_nothing_for_aborted_query(running_udp_server):
    server, dispatcher = running_udp_server
    host, port = server.address[:2]
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.settimeout(0.3)
        sock.sendto(b"\xff\x00garbage", (host, port))
        with pytest.raises(socket.timeout):
            sock.recvfrom(4096)
        assert len(dispatcher.clients) == 1
    finally:
        sock.close()


def test_bind_conflict_raises_oserror(dns):
    holder = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    holder.bind(("127.0.0.1", 0))
    try:
        port = holder.getsockname()[1]
        with pytest.raises(OSError):
            DNSServer("127.0.0.1", port, _EchoDispatcher(dns))
    finally:
        holder.close()

import logging
import socket
import time
from typing import Optional

from . import TransportError

logger = logging.getLogger(__name__)


class UDPError(TransportError):
    """
    Brief: DNS-over-UDP transport error.

    Inputs:
    - message: description
    - timed_out: True when no reply arrived in time

    Outputs:
    - Exception instance
    """

    pass


def udp_query(
    host: str,
    port: int,
    query: bytes,
    *,
    timeout_ms: int = 5000,
    source_ip: Optional[str] = None,
) -> bytes:
    """
    Brief: Send a datagram from a fresh ephemeral socket and wait for the reply.

    Inputs:
    - host: upstream resolver host/IP
    - port: upstream UDP port
    - query: wire-format DNS query bytes, forwarded verbatim
    - timeout_ms: total time to wait for a matching reply, in milliseconds
    - source_ip: optional source address to bind

    Outputs:
    - bytes: the first reply datagram from host:port whose DNS id matches the
      query's id, unmodified

    Notes:
    - The socket is connected to host:port, so the kernel discards datagrams
      from any other peer. Replies from the right peer with the wrong id are
      dropped and the wait continues until timeout_ms is spent.

    Example:
        >>> try:
        ...     udp_query('127.0.0.1', 53, b'\x00\x01', timeout_ms=10)
        ... except UDPError:
        ...     pass
    """
    family = socket.AF_INET6 if ":" in str(host) else socket.AF_INET
    deadline = time.monotonic() + timeout_ms / 1000.0
    try:
        s = socket.socket(family, socket.SOCK_DGRAM)
        try:
            if source_ip:
                s.bind((source_ip, 0))
            s.connect((host, int(port)))
            s.send(query)
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise socket.timeout("no matching reply")
                s.settimeout(remaining)
                data = s.recv(65535)
                if len(query) < 2 or data[:2] == query[:2]:
                    return data
                logger.debug(
                    "Ignoring UDP reply from %s:%s with mismatched id", host, port
                )
        finally:
            s.close()
    except socket.timeout as e:
        raise UDPError(
            f"UDP timeout after {timeout_ms}ms from {host}:{port}", timed_out=True
        ) from e
    except OSError as e:
        raise UDPError(f"UDP error: {e}") from e

import importlib.metadata
import logging
import time
from typing import Dict, Optional, Tuple, Union

import requests

from . import TransportError, UpstreamStatusError

try:
    BURROW_VERSION = importlib.metadata.version("burrow")
except importlib.metadata.PackageNotFoundError:  # pragma: no cover
    BURROW_VERSION = "unknown"

logger = logging.getLogger(__name__)

DNS_MESSAGE = "application/dns-message"
MAX_DNS_MESSAGE = 65535


class DoHError(TransportError):
    """
    Brief: DNS-over-HTTPS transport error.

    Inputs:
    - message: Description of the error
    - timed_out: True when the request hit its timeout

    Outputs:
    - Exception instance
    """

    pass


def proxy_mapping(proxy: Optional[str]) -> Dict[str, Optional[str]]:
    """
    Brief: Build the requests ``proxies`` mapping for a tunnel URL.

    Inputs:
    - proxy: proxy URL such as socks5h://127.0.0.1:1080, or None/empty

    Outputs:
    - dict for both http and https schemes. Without a proxy both map to
      None, which also stops requests from picking up HTTP(S)_PROXY from
      the environment.

    Example:
        >>> proxy_mapping("socks5h://127.0.0.1:1080")["https"]
        'socks5h://127.0.0.1:1080'
        >>> proxy_mapping(None)
        {'http': None, 'https': None}
    """
    value = str(proxy) if proxy else None
    return {"http": value, "https": value}


def _verify_arg(verify: bool, ca_file: Optional[str]) -> Union[bool, str]:
    if not verify:
        return False
    return ca_file if ca_file else True


def doh_query(
    url: str,
    query: bytes,
    *,
    timeout_ms: int = 5000,
    proxy: Optional[str] = None,
    verify: bool = True,
    ca_file: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
    session: Optional[requests.Session] = None,
) -> Tuple[bytes, Dict[str, str]]:
    """
    Brief: Perform one RFC 8484 POST DNS-over-HTTPS exchange, optionally
    through a SOCKS proxy.

    Inputs:
    - url: Target DoH endpoint, e.g. https://1.1.1.1/dns-query
    - query: Wire-format DNS query bytes (sent verbatim as the body)
    - timeout_ms: Hard budget for the whole attempt, body included
    - proxy: Optional proxy URL (socks5:// or socks5h://, needs PySocks)
    - verify: Verify TLS certificates
    - ca_file: Optional CA bundle path used when verify is True
    - headers: Optional extra headers
    - session: Optional requests.Session to reuse connections

    Outputs:
    - (body, resp_headers): response body bytes and lower-cased headers

    Raises:
    - DoHError for network, proxy, TLS or timeout failures (retryable).
    - UpstreamStatusError for non-2xx responses (terminal).

    Example:
        >>> try:
        ...     doh_query('https://example.invalid/dns-query', b'\x00\x01')
        ... except DoHError:
        ...     pass
    """
    if not str(url).lower().startswith(("https://", "http://")):
        raise DoHError(f"Unsupported URL: {url}")

    hdrs = {
        "Content-Type": DNS_MESSAGE,
        "Accept": DNS_MESSAGE,
        "User-Agent": f"burrow/{BURROW_VERSION}",
    }
    hdrs.update(headers or {})
    timeout_sec = max(0.001, timeout_ms / 1000.0)
    deadline = time.monotonic() + timeout_sec
    poster = session.post if session is not None else requests.post

    try:
        resp = poster(
            url,
            data=bytes(query),
            headers=hdrs,
            timeout=(timeout_sec, timeout_sec),
            proxies=proxy_mapping(proxy),
            verify=_verify_arg(verify, ca_file),
            allow_redirects=False,
            stream=True,
        )
    except requests.Timeout as e:
        raise DoHError(f"Timeout after {timeout_ms}ms: {e}", timed_out=True) from e
    except requests.exceptions.SSLError as e:
        raise DoHError(f"TLS error: {e}") from e
    except requests.RequestException as e:
        raise DoHError(f"Network error: {e}") from e

    try:
        if not 200 <= resp.status_code < 300:
            raise UpstreamStatusError(
                f"DoH query failed with status {resp.status_code}",
                status=resp.status_code,
            )
        headers_out = {k.lower(): v for k, v in resp.headers.items()}
        return _read_body(resp, deadline, timeout_ms), headers_out
    finally:
        resp.close()


def _read_body(resp: requests.Response, deadline: float, timeout_ms: int) -> bytes:
    """
    Brief: Read a streamed response body, giving up once the attempt deadline
    has passed.

    Inputs:
    - resp: streamed requests.Response
    - deadline: time.monotonic() value after which the attempt is abandoned
    - timeout_ms: original budget, for error messages

    Outputs:
    - bytes: complete body

    Notes:
    - The body is consumed one byte at a time: with a Content-Length body a
      larger read blocks until the whole chunk arrives, so a server
      trickling bytes could otherwise hold the attempt past its deadline.
      DNS messages are at most 65535 bytes, which bounds the loop.
    """
    if time.monotonic() > deadline:
        raise DoHError(f"Timeout after {timeout_ms}ms waiting for response", timed_out=True)
    body = bytearray()
    try:
        for chunk in resp.iter_content(chunk_size=1):
            if time.monotonic() > deadline:
                raise DoHError(
                    f"Timeout after {timeout_ms}ms reading response body",
                    timed_out=True,
                )
            body += chunk
            if len(body) > MAX_DNS_MESSAGE:
                raise DoHError(f"DoH response exceeds {MAX_DNS_MESSAGE} bytes")
    except requests.RequestException as e:
        timed_out = time.monotonic() >= deadline
        raise DoHError(f"Error reading response body: {e}", timed_out=timed_out) from e
    return bytes(body)

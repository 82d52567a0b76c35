"""Upstream strategy selection and resolution.

Brief:
  UpstreamResolver turns a decoded query (plus its original wire bytes) into
  a fresh decoded response. Two strategies exist and the first match wins:

    1. secondary: the query names match the configured override patterns,
       so the raw datagram is forwarded to a plain UDP resolver.
    2. doh: an endpoint is picked uniformly at random and the raw query is
       POSTed to it through the rate-limited retrying transport.

  The resolver never touches the cache; the dispatcher stores what it
  returns.
"""

from __future__ import annotations

import logging
import random
from typing import Callable, Iterable, List, Optional, Sequence

from .codec import CodecError, Message, decode
from .ratelimit import AdmissionGate, RetryingTransport
from .transports import TransportError, UpstreamError, UpstreamStatusError
from .transports.doh import doh_query
from .transports.udp import udp_query

logger = logging.getLogger(__name__)

STRATEGY_DOH = "doh"
STRATEGY_SECONDARY = "secondary"

MATCH_MODES = ("substring", "suffix", "exact")


def _normalize_name(name: str) -> str:
    return str(name).rstrip(".").lower()


class SecondaryRoute:
    """Brief: Override route sending matching names to a plain UDP resolver.

    Inputs:
      - host/port: Secondary resolver address.
      - patterns: Name patterns; matching is case-insensitive and ignores a
        trailing dot.
      - match_mode: 'substring' (pattern occurs anywhere in the name),
        'suffix' (name equals the pattern or ends with '.pattern') or
        'exact'.
      - timeout_ms: How long to wait for the single reply datagram.
      - fallback_to_doh: When True a failed secondary lookup is retried via
        DoH; when False (default) the failure is final.
      - gate: Optional AdmissionGate to share the global rate limit.

    Outputs:
      - SecondaryRoute instance.

    Example:
      >>> r = SecondaryRoute("192.168.1.1", patterns=[".lan"])
      >>> r.matches(["printer.lan."]), r.matches(["example.com."])
      (True, False)
    """

    def __init__(
        self,
        host: str,
        port: int = 53,
        *,
        patterns: Iterable[str] = (),
        match_mode: str = "substring",
        timeout_ms: int = 5000,
        fallback_to_doh: bool = False,
        gate: Optional[AdmissionGate] = None,
    ) -> None:
        mode = str(match_mode or "substring").strip().lower()
        if mode not in MATCH_MODES:
            raise ValueError(f"unknown match_mode {match_mode!r}")
        self.host = str(host)
        self.port = int(port)
        self.match_mode = mode
        self.timeout_ms = max(1, int(timeout_ms))
        self.fallback_to_doh = bool(fallback_to_doh)
        self.gate = gate
        self.patterns: List[str] = []
        for p in patterns or ():
            s = str(p).strip().lower()
            # Leading dots are meaningful for substring matches ('.lan').
            s = s.rstrip(".") if mode == "substring" else s.strip(".")
            if s:
                self.patterns.append(s)

    @property
    def label(self) -> str:
        return f"{self.host}:{self.port}"

    def _match_one(self, name: str) -> bool:
        q = _normalize_name(name)
        for p in self.patterns:
            if self.match_mode == "substring" and p in q:
                return True
            if self.match_mode == "exact" and q == p:
                return True
            if self.match_mode == "suffix" and (q == p or q.endswith("." + p)):
                return True
        return False

    def matches(self, names: Iterable[str]) -> bool:
        return any(self._match_one(n) for n in names)


class UpstreamResolver:
    """Brief: Resolve cache misses through the secondary or DoH strategy.

    Inputs:
      - endpoints: DoH endpoint URLs; one is chosen at random per query.
      - transport: RetryingTransport applying the gate/retry/timeout policy.
      - proxy: Proxy URL the DoH requests are tunnelled through (or None).
      - verify/ca_file: TLS verification settings for DoH.
      - secondary: Optional SecondaryRoute.
      - rng: random.Random used for endpoint selection.
      - stats: Optional StatsCollector.
      - doh_fn/udp_fn: Transport callables, injectable for tests.

    Outputs:
      - UpstreamResolver instance.
    """

    def __init__(
        self,
        endpoints: Sequence[str],
        transport: Optional[RetryingTransport] = None,
        *,
        proxy: Optional[str] = None,
        verify: bool = True,
        ca_file: Optional[str] = None,
        secondary: Optional[SecondaryRoute] = None,
        rng: Optional[random.Random] = None,
        stats=None,
        doh_fn: Callable[..., tuple] = doh_query,
        udp_fn: Callable[..., bytes] = udp_query,
    ) -> None:
        self.endpoints: List[str] = [str(e) for e in endpoints or []]
        self.transport = transport or RetryingTransport(AdmissionGate())
        self.proxy = proxy
        self.verify = bool(verify)
        self.ca_file = ca_file
        self.secondary = secondary
        self.rng = rng or random.Random()
        self.stats = stats
        self._doh_fn = doh_fn
        self._udp_fn = udp_fn

    def strategy_for(self, query: Message) -> str:
        if self.secondary is not None and self.secondary.matches(
            query.question_names()
        ):
            return STRATEGY_SECONDARY
        return STRATEGY_DOH

    def choose_endpoint(self) -> str:
        if not self.endpoints:
            raise UpstreamError("no DoH endpoints configured")
        return self.rng.choice(self.endpoints)

    def _record(self, upstream_id: str, outcome: str) -> None:
        if self.stats is not None:
            self.stats.record_upstream_result(upstream_id, outcome)

    def _record_failure(self, upstream_id: str, exc: BaseException) -> None:
        if isinstance(exc, TransportError) and exc.timed_out:
            self._record(upstream_id, "timeout")
        elif isinstance(exc, UpstreamStatusError):
            self._record(upstream_id, "bad_status")
        elif isinstance(exc, CodecError):
            self._record(upstream_id, "bad_response")
        else:
            self._record(upstream_id, "error")

    def resolve(self, query: Message, raw: bytes) -> Message:
        """Brief: Obtain a fresh decoded response for ``query``.

        Inputs:
          - query: Decoded client query.
          - raw: The client's original wire bytes, forwarded verbatim.

        Outputs:
          - Message decoded from the upstream reply.

        Raises:
          - UpstreamError subclasses when the upstream cannot be reached or
            answers with a bad status; CodecError when the reply is not a
            valid DNS message.
        """

        if self.strategy_for(query) == STRATEGY_SECONDARY:
            try:
                return self._resolve_secondary(raw)
            except (UpstreamError, CodecError) as e:
                if not self.secondary.fallback_to_doh:
                    raise
                logger.warning(
                    "Secondary resolver %s failed for %s (%s); falling back to DoH",
                    self.secondary.label,
                    ", ".join(query.question_names()),
                    e,
                )
        return self._resolve_doh(query, raw)

    def _resolve_secondary(self, raw: bytes) -> Message:
        route = self.secondary
        logger.debug("Forwarding to secondary resolver %s", route.label)
        try:
            if route.gate is not None:
                wire = route.gate.run(
                    self._udp_fn, route.host, route.port, raw, timeout_ms=route.timeout_ms
                )
            else:
                wire = self._udp_fn(
                    route.host, route.port, raw, timeout_ms=route.timeout_ms
                )
            message = decode(wire)
        except (UpstreamError, CodecError) as e:
            self._record_failure(route.label, e)
            raise
        self._record(route.label, "success")
        return message

    def _resolve_doh(self, query: Message, raw: bytes) -> Message:
        endpoint = self.choose_endpoint()
        logger.debug(
            "Querying DoH %s for %s", endpoint, ", ".join(query.question_names())
        )
        try:
            body, _headers = self.transport.call(
                self._doh_fn,
                endpoint,
                raw,
                label=endpoint,
                proxy=self.proxy,
                verify=self.verify,
                ca_file=self.ca_file,
            )
            message = decode(body)
        except (UpstreamError, CodecError) as e:
            self._record_failure(endpoint, e)
            raise
        self._record(endpoint, "success")
        return message

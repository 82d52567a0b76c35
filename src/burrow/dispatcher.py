"""Per-datagram orchestration: decode, cache, resolve, store, re-encode.

Brief:
  QueryDispatcher.handle() takes one raw query datagram and returns the reply
  bytes to send, or None when the query is aborted. Aborted queries get no
  reply at all; the client times out and retries, as it would for a lost
  UDP packet.
"""

from __future__ import annotations

import logging
from typing import Optional

from .cache import (
    CacheConsistencyError,
    CacheKey,
    LookupStatus,
    ResolutionCache,
    make_cache_key,
)
from .codec import CodecError, Message, decode, encode
from .resolver import UpstreamResolver
from .singleflight import SingleFlight
from .transports import UpstreamError

logger = logging.getLogger(__name__)


class QueryDispatcher:
    """Brief: Serve one query from cache or upstream.

    Inputs:
      - resolver: UpstreamResolver used on cache misses.
      - cache: ResolutionCache owned by this dispatcher (a fresh one is
        created when omitted).
      - single_flight: Coalesce concurrent misses for the same key.
      - stats: Optional StatsCollector.

    Outputs:
      - QueryDispatcher instance. handle() is safe to call from many threads.

    Example:
      >>> # dispatcher = QueryDispatcher(resolver)
      >>> # reply = dispatcher.handle(datagram, ("127.0.0.1", 5353))
    """

    def __init__(
        self,
        resolver: UpstreamResolver,
        cache: Optional[ResolutionCache] = None,
        *,
        single_flight: bool = True,
        stats=None,
    ) -> None:
        self.resolver = resolver
        self.cache = cache if cache is not None else ResolutionCache()
        self.single_flight: Optional[SingleFlight[Message]] = (
            SingleFlight() if single_flight else None
        )
        self.stats = stats

    def _stat(self, name: str, *args) -> None:
        if self.stats is not None:
            getattr(self.stats, name)(*args)

    def handle(self, data: bytes, client=None) -> Optional[bytes]:
        """Brief: Produce the reply for one query datagram.

        Inputs:
          - data: Raw query bytes as received.
          - client: Optional (address, port) used only for logging.

        Outputs:
          - bytes to send back, or None when the query was aborted.
        """

        self._stat("record_query")
        try:
            query = decode(data)
        except CodecError as e:
            logger.warning("Failed to decode DNS query from %s: %s", client, e)
            self._stat("record_decode_error")
            self._stat("record_aborted")
            return None

        key = make_cache_key(query.questions)
        names = ", ".join(query.question_names())

        reply = self._from_cache(key, query, names)
        if reply is not None:
            return reply

        try:
            response = self._resolve(key, query, data)
        except (UpstreamError, CodecError) as e:
            logger.error("Error resolving %s for %s: %s", names, client, e)
            self._stat("record_aborted")
            return None

        self.cache.store(key, response)
        try:
            wire = encode(response.with_id(query.id))
        except CodecError as e:
            logger.error("Failed to encode response for %s: %s", names, e)
            self._stat("record_encode_error")
            self._stat("record_aborted")
            return None
        self._stat("record_response", response.rcode_name)
        return wire

    def _from_cache(self, key: CacheKey, query: Message, names: str) -> Optional[bytes]:
        """Return encoded reply bytes on a usable hit, otherwise None."""

        try:
            result = self.cache.lookup(key)
        except CacheConsistencyError as e:
            logger.warning("Dropping cache entry for %s: %s", names, e)
            self._stat("record_cache_error")
            return None

        if result.status is LookupStatus.STALE:
            logger.debug("Cache expired for %s", names)
            self._stat("record_cache_stale")
            return None
        if result.status is LookupStatus.MISS:
            self._stat("record_cache_miss")
            return None

        try:
            wire = encode(result.message.with_id(query.id))
        except CodecError as e:
            # Re-resolve rather than fail; the fresh answer overwrites the entry.
            logger.warning("Cached response for %s failed to encode: %s", names, e)
            self._stat("record_cache_error")
            return None
        logger.debug("Serving %s from cache", names)
        self._stat("record_cache_hit")
        self._stat("record_response", result.message.rcode_name)
        return wire

    def _resolve(self, key: CacheKey, query: Message, data: bytes) -> Message:
        self._stat("record_strategy", self.resolver.strategy_for(query))
        if self.single_flight is None:
            return self.resolver.resolve(query, data)
        response, shared = self.single_flight.do(
            key, lambda: self.resolver.resolve(query, data)
        )
        if shared:
            self._stat("record_single_flight_shared")
        return response

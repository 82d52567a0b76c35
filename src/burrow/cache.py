"""In-memory resolution cache with read-time TTL decay.

Brief:
  Maps a question-sequence key to the most recently resolved Message and the
  monotonic time it was stored. Nothing expires in the background: on every
  lookup the elapsed time is computed, answer TTLs are decayed in a fresh
  Message value, and an entry whose minimum TTL has run out is removed and
  reported as stale.

Notes:
  - The mapping is unbounded; entries only leave through stale removal or
    clear().
  - All dictionary operations are synchronized with an RLock.
"""

from __future__ import annotations

import enum
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, NamedTuple, Optional, Tuple

from dnslib import QTYPE, RCODE

from .codec import Message, Question

logger = logging.getLogger(__name__)

CacheKey = Tuple[Tuple[str, int, int], ...]


class CacheConsistencyError(RuntimeError):
    """
    Brief: A stored cache entry is malformed and cannot be served.

    Inputs:
    - message: Description of the inconsistency

    Outputs:
    - Exception instance
    """


class LookupStatus(enum.Enum):
    HIT = "hit"
    STALE = "stale"
    MISS = "miss"


class CacheLookup(NamedTuple):
    """Result of ResolutionCache.lookup(); message is only set on HIT."""

    status: LookupStatus
    message: Optional[Message] = None

    @property
    def hit(self) -> bool:
        return self.status is LookupStatus.HIT


@dataclass(frozen=True)
class CacheEntry:
    message: Message
    inserted_at: float
    ttl: int


def make_cache_key(questions: Iterable[Question]) -> CacheKey:
    """Brief: Build the cache key for a question sequence.

    Inputs:
      - questions: Ordered questions of a query.

    Outputs:
      - CacheKey: tuple of (name, type, class) tuples in question order.

    Notes:
      - Order sensitive and case preserving: ('a.', 'b.') and ('b.', 'a.')
        are different keys, as are 'Example.com.' and 'example.com.'.

    Example:
      >>> make_cache_key([Question("example.com.", 1, 1)])
      (('example.com.', 1, 1),)
    """

    return tuple((str(q.name), int(q.type), int(q.cls)) for q in questions)


def decay_ttl(ttl: int, elapsed: float) -> int:
    """Brief: Remaining TTL after ``elapsed`` seconds, clamped at zero.

    Example:
      >>> decay_ttl(300, 12.9)
      288
      >>> decay_ttl(5, 9.0)
      0
    """

    return max(0, int(ttl) - int(math.floor(max(0.0, elapsed))))


def negative_ttl_for(message: Message, cap: int) -> int:
    """Brief: TTL for caching a response without answers.

    Inputs:
      - message: Response with an empty answer section.
      - cap: Configured negative caching TTL in seconds (upper bound).

    Outputs:
      - int: min(SOA RR ttl, SOA minimum) from the authority section when
        an SOA is present, otherwise ``cap``; never more than ``cap``.
    """

    cap = max(0, int(cap))
    candidates = []
    for rr in message.authority:
        if rr.type != QTYPE.SOA:
            continue
        candidates.append(int(rr.ttl))
        times = getattr(rr.rdata, "times", None) or ()
        if len(times) >= 5:
            candidates.append(int(times[4]))
    if candidates:
        return max(0, min(min(candidates), cap))
    return cap


class ResolutionCache:
    """Thread-safe question-keyed response cache with read-time TTL decay.

    Brief:
        Stores whole Message values. Lookups never return the stored object
        itself; a hit always yields a new Message whose answer TTLs have been
        reduced by the whole seconds elapsed since insertion.

    Inputs:
        - negative_ttl: Seconds to cache responses with no answer records.
          0 (default) means such responses are never cached.
        - clock: Monotonic time source, injectable for tests.

    Outputs:
        ResolutionCache instance

    Example use:
        >>> from dnslib import A
        >>> from burrow.codec import AnswerRecord
        >>> q = Question("example.com.", 1, 1)
        >>> resp = Message(id=9, questions=(q,),
        ...                answers=(AnswerRecord("example.com.", 1, 1, 60, A("1.2.3.4")),))
        >>> cache = ResolutionCache()
        >>> cache.store(make_cache_key([q]), resp)
        True
        >>> cache.lookup(make_cache_key([q])).status
        <LookupStatus.HIT: 'hit'>
    """

    def __init__(
        self,
        *,
        negative_ttl: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.negative_ttl = max(0, int(negative_ttl or 0))
        self._clock = clock
        self._store: Dict[CacheKey, CacheEntry] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._store

    def entry_ttl(self, message: Message) -> Optional[int]:
        """Brief: Lifetime an entry for ``message`` would get, or None.

        Inputs:
          - message: Decoded upstream response.

        Outputs:
          - int seconds for cacheable responses; None when the message must
            not be cached (SERVFAIL, a truncated reply, a zero TTL, or no
            answers with negative caching off). Truncated replies are
            relayed but never stored since there is no TCP retry to
            complete them.
        """

        if message.rcode == RCODE.SERVFAIL or message.truncated:
            return None
        if message.answers:
            ttl = min(int(rr.ttl) for rr in message.answers)
        elif self.negative_ttl > 0:
            ttl = negative_ttl_for(message, self.negative_ttl)
        else:
            return None
        return ttl if ttl > 0 else None

    def store(
        self, key: CacheKey, message: Message, now: Optional[float] = None
    ) -> bool:
        """Brief: Insert or overwrite the entry for ``key``.

        Inputs:
          - key: CacheKey for the query's questions.
          - message: Fully decoded upstream response.
          - now: Optional insertion time (defaults to the cache clock).

        Outputs:
          - bool: True when stored; False when the caching policy refused it.
        """

        ttl = self.entry_ttl(message)
        if ttl is None:
            logger.debug(
                "Not caching %s (%s, %d answers)",
                key,
                message.rcode_name,
                len(message.answers),
            )
            return False
        inserted_at = self._clock() if now is None else float(now)
        with self._lock:
            self._store[key] = CacheEntry(message, inserted_at, int(ttl))
        logger.debug("Cached %s with TTL %ds", key, ttl)
        return True

    def lookup(self, key: CacheKey, now: Optional[float] = None) -> CacheLookup:
        """Brief: Look up ``key`` and decay TTLs on a hit.

        Inputs:
          - key: CacheKey for the query's questions.
          - now: Optional lookup time (defaults to the cache clock).

        Outputs:
          - CacheLookup with status HIT (and a decayed Message copy), STALE
            (the entry was removed) or MISS.

        Raises:
          - CacheConsistencyError when the stored entry is malformed. The
            entry is dropped first so the next lookup is a clean MISS.
        """

        current = self._clock() if now is None else float(now)
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return CacheLookup(LookupStatus.MISS)

            if not isinstance(entry, CacheEntry) or not isinstance(
                entry.message, Message
            ):
                del self._store[key]
                raise CacheConsistencyError(f"malformed cache entry for {key!r}")

            elapsed = max(0.0, current - entry.inserted_at)
            if elapsed >= entry.ttl:
                del self._store[key]
                logger.debug("Cache expired for %s after %.1fs", key, elapsed)
                return CacheLookup(LookupStatus.STALE)

        try:
            decayed = entry.message.with_answers(
                rr.with_ttl(decay_ttl(rr.ttl, elapsed)) for rr in entry.message.answers
            )
        except (TypeError, ValueError) as exc:
            with self._lock:
                if self._store.get(key) is entry:
                    del self._store[key]
            raise CacheConsistencyError(
                f"cannot decay TTLs for {key!r}: {exc}"
            ) from exc
        return CacheLookup(LookupStatus.HIT, decayed)

    def remove(self, key: CacheKey) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            removed = len(self._store)
            self._store.clear()
        return removed

    def snapshot(self) -> Dict[str, int]:
        """Brief: Entry counts for diagnostics.

        Outputs:
          - dict with total_entries, live_entries and expired_entries.
        """

        now = self._clock()
        with self._lock:
            entries = list(self._store.values())
        live = sum(1 for e in entries if now - e.inserted_at < e.ttl)
        return {
            "total_entries": len(entries),
            "live_entries": live,
            "expired_entries": len(entries) - live,
        }

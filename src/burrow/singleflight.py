"""Collapse concurrent identical upstream lookups into one call."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Call(Generic[T]):
    __slots__ = ("done", "result", "error", "waiters")

    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Optional[T] = None
        self.error: Optional[BaseException] = None
        self.waiters = 0


class SingleFlight(Generic[T]):
    """Brief: Pending-call table keyed by cache key.

    Inputs:
      - None.

    Outputs:
      - SingleFlight instance.

    Notes:
      - The first caller for a key (the leader) runs the function. Callers
        arriving while it runs block until it finishes and then receive the
        same result, or the same exception re-raised.
      - The key is released as soon as the leader finishes, so the next
        caller after that starts a fresh call.

    Example:
      >>> sf = SingleFlight()
      >>> sf.do("k", lambda: 42)
      (42, False)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: Dict[Hashable, _Call[T]] = {}

    def pending(self) -> int:
        with self._lock:
            return len(self._calls)

    def do(self, key: Hashable, fn: Callable[[], T]) -> Tuple[T, bool]:
        """Brief: Run ``fn`` once per concurrent group of callers for ``key``.

        Inputs:
          - key: Hashable identity of the work (the query's cache key).
          - fn: Zero-argument callable performing the work.

        Outputs:
          - (result, shared): shared is True when this caller waited on
            another caller's in-flight call.
        """

        with self._lock:
            call = self._calls.get(key)
            leader = call is None
            if leader:
                call = _Call()
                self._calls[key] = call
            else:
                call.waiters += 1

        if not leader:
            logger.debug("Joining in-flight lookup for %s", key)
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.result, True  # type: ignore[return-value]

        try:
            call.result = fn()
        except BaseException as e:
            call.error = e
            raise
        finally:
            with self._lock:
                self._calls.pop(key, None)
            call.done.set()
        return call.result, False

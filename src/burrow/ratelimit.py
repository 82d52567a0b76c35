"""Admission control and retry policy for outbound upstream calls.

Brief:
  AdmissionGate is the single, process-wide gate every DoH attempt passes
  through: at most ``max_concurrent`` attempts run at once and successive
  attempt starts are at least ``min_spacing`` seconds apart. The gate is
  global, so it also spaces calls that go to different endpoints.

  RetryingTransport wraps a single-exchange transport callable with a fixed
  attempt budget, a per-attempt timeout and a fixed backoff between attempts.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from typing import Callable, Iterator, Optional, TypeVar

from .transports import TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AdmissionGate:
    """Brief: Concurrency cap plus minimum spacing between call starts.

    Inputs:
      - max_concurrent: Maximum attempts in flight (>= 1).
      - min_spacing: Minimum seconds between two successive starts (>= 0).
      - clock/sleep: Injectable monotonic clock and sleep for tests.

    Outputs:
      - AdmissionGate instance.

    Notes:
      - Start slots are reserved under a lock, so two callers can never be
        admitted closer together than min_spacing even when they race.
      - Waiting (for a free slot or for the spacing) only suspends the
        calling thread.

    Example:
      >>> gate = AdmissionGate(max_concurrent=1, min_spacing=0.0)
      >>> with gate.slot():
      ...     gate.in_flight
      1
    """

    def __init__(
        self,
        max_concurrent: int = 1,
        min_spacing: float = 0.1,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_concurrent = max(1, int(max_concurrent))
        self.min_spacing = max(0.0, float(min_spacing))
        self._clock = clock
        self._sleep = sleep
        self._slots = threading.BoundedSemaphore(self.max_concurrent)
        self._lock = threading.Lock()
        self._next_start: Optional[float] = None
        self._in_flight = 0
        self.admitted_total = 0

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def _reserve_start(self) -> float:
        """Return the delay before the caller may start and book that slot."""

        with self._lock:
            now = self._clock()
            start = now if self._next_start is None else max(now, self._next_start)
            self._next_start = start + self.min_spacing
            self._in_flight += 1
            self.admitted_total += 1
            return start - now

    @contextlib.contextmanager
    def slot(self) -> Iterator[None]:
        self._slots.acquire()
        try:
            delay = self._reserve_start()
            try:
                if delay > 0:
                    self._sleep(delay)
                yield
            finally:
                with self._lock:
                    self._in_flight -= 1
        finally:
            self._slots.release()

    def run(self, fn: Callable[..., T], *args, **kwargs) -> T:
        with self.slot():
            return fn(*args, **kwargs)


class RetryingTransport:
    """Brief: Bounded retries with fixed backoff around one transport call.

    Inputs:
      - gate: AdmissionGate every attempt passes through (None = ungated).
      - max_attempts: Total attempts before giving up (>= 1).
      - per_attempt_timeout_ms: Timeout handed to each attempt.
      - backoff_ms: Fixed sleep between failed attempts.
      - sleep: Injectable sleep for tests.

    Outputs:
      - RetryingTransport instance.

    Notes:
      - Only TransportError (network failures and timeouts) is retried.
        Any other exception, notably UpstreamStatusError, ends the call
        immediately.
    """

    def __init__(
        self,
        gate: Optional[AdmissionGate] = None,
        *,
        max_attempts: int = 3,
        per_attempt_timeout_ms: int = 5000,
        backoff_ms: int = 500,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gate = gate
        self.max_attempts = max(1, int(max_attempts))
        self.per_attempt_timeout_ms = max(1, int(per_attempt_timeout_ms))
        self.backoff_ms = max(0, int(backoff_ms))
        self._sleep = sleep

    def call(self, fn: Callable[..., T], *args, label: str = "upstream", **kwargs) -> T:
        """Brief: Invoke ``fn(*args, timeout_ms=..., **kwargs)`` with retries.

        Inputs:
          - fn: Single-exchange transport callable accepting timeout_ms.
          - label: Upstream identifier used in log lines.

        Outputs:
          - Whatever ``fn`` returns on the first successful attempt.

        Raises:
          - The last TransportError once max_attempts have failed.
          - Non-retryable errors from ``fn`` unchanged.
        """

        kwargs["timeout_ms"] = self.per_attempt_timeout_ms
        for attempt in range(1, self.max_attempts + 1):
            try:
                if self.gate is None:
                    return fn(*args, **kwargs)
                return self.gate.run(fn, *args, **kwargs)
            except TransportError as e:
                logger.warning(
                    "Attempt %d/%d to %s failed: %s",
                    attempt,
                    self.max_attempts,
                    label,
                    e,
                )
                if attempt >= self.max_attempts:
                    raise
                if self.backoff_ms:
                    self._sleep(self.backoff_ms / 1000.0)
        raise AssertionError("unreachable")  # pragma: no cover

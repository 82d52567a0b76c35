"""Upstream transports and their shared error hierarchy.

Brief:
  Each transport performs exactly one network exchange with an upstream and
  reports failure through the classes below so the retry layer can tell a
  retryable network problem from a terminal upstream answer.
"""

from __future__ import annotations


class UpstreamError(Exception):
    """
    Brief: Base class for failures obtaining a response from an upstream.

    Inputs:
    - message: Description of the error

    Outputs:
    - Exception instance
    """


class TransportError(UpstreamError):
    """
    Brief: Network-level failure (connect, send, receive, TLS, timeout).

    Inputs:
    - message: Description of the error
    - timed_out: True when the attempt hit its timeout

    Outputs:
    - Exception instance; retried by RetryingTransport.
    """

    def __init__(self, message: str = "", *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = bool(timed_out)


class UpstreamStatusError(UpstreamError):
    """
    Brief: The upstream answered with a non-success status.

    Inputs:
    - message: Description of the error
    - status: HTTP status code returned by the upstream

    Outputs:
    - Exception instance; terminal for the call (not retried).
    """

    def __init__(self, message: str = "", *, status: int = 0) -> None:
        super().__init__(message)
        self.status = int(status)

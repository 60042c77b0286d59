"""
Error taxonomy for the request governor.

  RateLimitExceeded    — admission denied; no I/O attempted.  Retry later.
  NetworkFailure       — the transport failed; surfaced and alerted.
  ConfigurationInvalid — a configure() call was rejected synchronously.

Suspected blocking has no exception type: a blocked-looking response is
still a response and is returned to the caller unchanged.  It is only
observable through the alert side-channel.
"""

from __future__ import annotations

from typing import Optional


class GovernorError(RuntimeError):
    """Base class for all errors raised by the governance layer."""


class RateLimitExceeded(GovernorError):
    """Raised when a dispatch is refused by the admission window.

    Attributes:
        limit:          The budget in force when the call was refused.
        window_seconds: Length of the admission window.
    """

    def __init__(self, limit: int, window_seconds: float) -> None:
        self.limit          = limit
        self.window_seconds = window_seconds
        if limit == 0:
            detail = "all outbound traffic is halted (emergency stop)"
        else:
            detail = f"budget of {limit} requests per {window_seconds:.0f}s is spent"
        super().__init__(f"Rate limit exceeded: {detail}.")


class NetworkFailure(GovernorError):
    """Raised when the underlying HTTP call fails at the transport level.

    Attributes:
        url: The URL that was being dispatched.
    """

    def __init__(self, url: str, reason: Optional[str] = None) -> None:
        self.url = url
        message = f"Network failure while dispatching {url}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ConfigurationInvalid(GovernorError, ValueError):
    """Raised when a configuration update violates a policy invariant."""

"""
Exception types raised by the Milky runtime.

Every error derives from :class:`MilkyError` so callers can catch one base
class. Transport and decode faults are normally contained inside their
component and only logged; the ones that reach application code are
configuration errors, terminal connect failures and per-call failures.
"""

from __future__ import annotations

from typing import Any


class MilkyError(Exception):
    """Base class for all runtime errors."""


class ConfigError(MilkyError, ValueError):
    """Invalid runtime configuration (bad endpoint, bad capacity, ...)."""


# ============================================================
#  Decoding
# ============================================================


class DecodeError(MilkyError):
    """A frame could not be decoded."""

    def __init__(self, message: str, raw: Any = None) -> None:
        super().__init__(message)
        self.raw = raw


class MalformedFrameError(DecodeError):
    """The frame is not a JSON object."""


class MalformedPayloadError(DecodeError):
    """A known event tag arrived with missing or ill-typed required fields."""

    def __init__(self, tag: str, raw: Any = None, detail: str = "") -> None:
        message = f"Malformed payload for event '{tag}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, raw)
        self.tag = tag


# ============================================================
#  Transport
# ============================================================


class TransportError(MilkyError):
    """Connection-level failure."""


class ConnectFailedError(TransportError):
    """The transport could not be established after all retries."""


class TransportNotReadyError(TransportError):
    """The transport cannot write right now (connecting or reconnecting)."""


class ChannelClosedError(MilkyError):
    """The dispatch channel was closed."""


class AuthError(MilkyError):
    """An inbound delivery failed authentication."""


# ============================================================
#  Calls
# ============================================================


class CorrelationError(MilkyError):
    """A call ended without a response."""

    def __init__(self, message: str, echo: str | None = None) -> None:
        super().__init__(message)
        self.echo = echo


class CallTimeoutError(CorrelationError, TimeoutError):
    """No response arrived before the call deadline."""


class TransportClosedError(CorrelationError):
    """The transport went away while the call was pending."""


class ApiError(MilkyError):
    """The backend answered the call with a failure status."""

    def __init__(self, message: str, retcode: int | None = None) -> None:
        super().__init__(f"API request failed: {message}")
        self.message = message
        self.retcode = retcode


class ApiHttpError(MilkyError):
    """The HTTP API returned a non-success status code."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"HTTP API error ({status}): {message}")
        self.status = status
        self.message = message

"""Exception hierarchy shared by the streamer components."""

from __future__ import annotations

from typing import List, Optional


class StreamerError(Exception):
    """Base class for every error raised by print_streamer."""


class ConfigError(StreamerError):
    """Invalid or missing configuration; fatal at startup."""


class AuthorizationError(StreamerError):
    """No usable credentials, or the platform revoked them."""


class UpstreamUnavailableError(StreamerError):
    """The MJPEG source could not be reached."""


class Cancelled(StreamerError):
    """A wait was interrupted by the cancellation handle."""


class SessionError(StreamerError):
    """A live session failed terminally."""

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or reason)
        self.reason = reason


class PlatformError(StreamerError):
    """An error reported by the broadcast platform."""

    retryable = False

    def __init__(self, message: str, reason: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.reason = reason
        self.status = status


class TransientPlatformError(PlatformError):
    """Network failure, 429 or 5xx. The only class the polling manager retries."""

    retryable = True


class QuotaExceededError(PlatformError):
    pass


class NotFoundError(PlatformError):
    pass


class DuplicateBroadcastError(PlatformError):
    pass


class InvalidTransitionError(PlatformError):
    """The broadcast is not in the state the requested transition needs."""


class RedundantTransitionError(PlatformError):
    """The broadcast is already in the requested state."""


class EncoderError(StreamerError):
    def __init__(self, returncode: Optional[int], stderr_tail: Optional[List[str]] = None):
        tail = stderr_tail or []
        detail = tail[-1] if tail else "no output"
        super().__init__(f"encoder exited with code {returncode}: {detail}")
        self.returncode = returncode
        self.stderr_tail = tail

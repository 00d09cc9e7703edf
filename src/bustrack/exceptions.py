"""Exception types raised by BusTrack."""

from typing import Optional


class BusTrackError(Exception):
    """Base class for all BusTrack errors."""


class FetchError(BusTrackError):
    """An upstream request failed (non-2xx status or unusable body)."""

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class NetworkError(FetchError):
    """Transport-level failure: DNS, connection reset, timeout."""


class RateLimitError(FetchError):
    """Upstream refused the request with a rate-limit status (403/429)."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status: Optional[int] = None,
        attempts: int = 1,
    ):
        super().__init__(message, url=url, status=status)
        self.attempts = attempts


class SchemaError(BusTrackError):
    """An upstream record did not have the expected shape."""


class InvalidTimeError(BusTrackError, ValueError):
    """An ETA timestamp could not be parsed."""


class ResolutionGapError(BusTrackError, LookupError):
    """A join between upstream datasets found no match."""


class OperationCancelled(BusTrackError):
    """A load was superseded and stopped before completing."""

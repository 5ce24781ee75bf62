"""
Error taxonomy for the collector.

Fetchers raise ConfigInvalidError, TransientUpstreamError or
PermanentUpstreamError; the scheduler records any of them against the
offending source and moves on. StructureDriftError never leaves the Hacker
News comment ingester. StoreError wraps every database failure.
"""


class CollectorError(Exception):
    """Base exception for collector errors."""


class ConfigInvalidError(CollectorError):
    """Source configuration failed validation before any network call."""


class UpstreamError(CollectorError):
    """An upstream API answered with something we cannot use."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientUpstreamError(UpstreamError):
    """Network failure, timeout, 5xx or 429; retried with back-off."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class PermanentUpstreamError(UpstreamError):
    """4xx other than 429, or a malformed body; never retried."""


class StructureDriftError(CollectorError):
    """Scraped HTML no longer matches the expected layout."""


class StoreError(CollectorError):
    """Any failure inside the persistence layer."""


class SchedulerOverlapError(CollectorError):
    """A tick was requested while another one is still running."""


class SchedulerStopTimeout(CollectorError):
    """In-flight work did not finish before the stop deadline."""


class SourceNotFoundError(CollectorError):
    """No source with the requested id."""

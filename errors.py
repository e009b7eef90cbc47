"""Exception types raised by the ingestion pipeline."""

from __future__ import annotations


class FetchError(RuntimeError):
    """HTTP fetch failed: non-2xx status, timeout, too many redirects or transport error."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{reason} ({url})")
        self.url = url
        self.reason = reason


class PdfExtractionError(RuntimeError):
    """No PDF text extraction strategy produced any text."""


class RunInProgressError(RuntimeError):
    """A crawl run is already RUNNING; the new invocation is rejected."""


class OperationTimeoutError(TimeoutError):
    """An orchestrated operation exceeded its time ceiling."""

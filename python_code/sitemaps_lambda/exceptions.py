"""
Exception types for the sitemaps pipeline.

The hierarchy mirrors how each failure is handled:
  - Capacity errors are caught at the rotation boundary and turned into a
    rotate-and-retry.
  - Message anomalies are caught per message and turned into a counter.
  - Transport errors surface through the write pipeline's error list.
  - Fatal batch errors escape to the handler so the stream redelivers.
"""

from typing import Any, Dict, List, Optional


class SitemapsError(Exception):
    """Base class for all errors raised by this package."""


class SitemapStateError(SitemapsError):
    """Raised when a sitemap or index is used out of lifecycle order."""


class SitemapCapacityError(SitemapsError):
    """A write was rejected because the file has reached one of its limits."""


class SitemapWriteWouldOverflow(SitemapCapacityError):
    """Writing the given item would push the file past its byte limit."""


class SitemapAlreadyFull(SitemapCapacityError):
    """The file has no remaining capacity at all (count or bytes)."""


class MessageAnomalyError(SitemapsError):
    """An index-writer message carried an action this writer does not know."""

    def __init__(self, message: str, action: Optional[str] = None):
        super().__init__(message)
        self.action = action


class TransientTransportError(SitemapsError):
    """
    Some records of a Kinesis batch could not be written after all retries.

    Attributes:
        failed_records: The PutRecords entries that were still failing.
    """

    def __init__(self, message: str, failed_records: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.failed_records = failed_records or []


class FatalBatchError(SitemapsError):
    """The incoming batch cannot be decoded; no safe partial state exists."""

"""Exception taxonomy for the harvest pipeline.

Every per-URL failure is one of these and is handled the same way by the
worker loop: recorded on the queue row, retried by a later claim while the
row is under the retry ceiling.
"""
from __future__ import annotations


class HarvestError(Exception):
    """Base class for retryable per-URL failures."""


class NetworkError(HarvestError):
    """Non-success HTTP status, timeout or transport failure."""


class ParseError(HarvestError):
    """Page content did not yield a usable product."""


class PersistError(HarvestError):
    """Catalog or image write failed."""

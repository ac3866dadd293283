"""
Typed error categories for the sync engine.

Upstream clients (JSON-RPC nodes, web3, requests) report failures as a
grab-bag of exception types and message strings. ``classify_error`` maps the
recognized signatures onto the small hierarchy below so that retry, split and
skip decisions are made in one place.
"""

from __future__ import annotations

import re
from enum import Enum

import requests
from web3.exceptions import BlockNotFound, Web3Exception


class ErrorCategory(str, Enum):
    TRANSIENT = "transient"
    RANGE_LIMIT = "range_limit"
    MALFORMED = "malformed"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


class SyncError(Exception):
    category = ErrorCategory.UNKNOWN


class TransientSourceError(SyncError):
    category = ErrorCategory.TRANSIENT


class RangeLimitError(SyncError):
    category = ErrorCategory.RANGE_LIMIT

    def __init__(self, message: str, suggested_range: tuple[int, int] | None = None) -> None:
        super().__init__(message)
        self.suggested_range = suggested_range


class MalformedEventError(SyncError):
    category = ErrorCategory.MALFORMED


class SourceUnavailable(SyncError):
    category = ErrorCategory.UNAVAILABLE


class CursorStoreUnavailable(SyncError):
    category = ErrorCategory.UNAVAILABLE


class ProjectionFailed(SyncError):
    """An event could not be written, so the cursor has to stay in front of it."""

    category = ErrorCategory.TRANSIENT

    def __init__(self, message: str, position: tuple[int, int]) -> None:
        super().__init__(message)
        self.position = position


class EntityNotFound(SyncError, KeyError):
    category = ErrorCategory.UNKNOWN

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "entity not found"


_RANGE_LIMIT_SIGNATURES = (
    "range is too large",
    "block range",
    "max is 1k blocks",
    "query returned more than",
    "exceeds max results",
    "response size exceeded",
    "too many results",
    "log response size",
    "-32005",
)

_TRANSIENT_SIGNATURES = (
    "timeout",
    "timed out",
    "429",
    "rate limit",
    "too many requests",
    "502",
    "503",
    "504",
    "bad gateway",
    "gateway",
    "connection reset",
    "connection refused",
    "connection aborted",
    "temporarily unavailable",
    "header not found",
    "missing trie node",
    "-32603",
    "-32000",
)

_MALFORMED_SIGNATURES = (
    "could not decode",
    "mismatchedabi",
    "insufficientdatabytes",
    "invalid event",
)

_SUGGESTED_RANGE = re.compile(r"\[?0x([0-9a-f]+),\s*0x([0-9a-f]+)\]?", re.IGNORECASE)
_SUGGESTED_RANGE_DEC = re.compile(r"range (\d+)-(\d+)")


def _suggested_range(message: str) -> tuple[int, int] | None:
    m = _SUGGESTED_RANGE_DEC.search(message)
    if m:
        return int(m.group(1)), int(m.group(2))
    m = _SUGGESTED_RANGE.search(message)
    if m:
        return int(m.group(1), 16), int(m.group(2), 16)
    return None


def classify_error(exc: BaseException) -> ErrorCategory:
    """Map an exception raised by an upstream client onto an ``ErrorCategory``."""
    if isinstance(exc, SyncError):
        return exc.category
    text = f"{type(exc).__name__}: {exc}".lower()
    # Range limits come back as generic RPC errors, check them before transport types.
    if any(sig in text for sig in _RANGE_LIMIT_SIGNATURES):
        return ErrorCategory.RANGE_LIMIT
    if any(sig in text for sig in _MALFORMED_SIGNATURES):
        return ErrorCategory.MALFORMED
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError, TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, BlockNotFound):
        return ErrorCategory.TRANSIENT
    if any(sig in text for sig in _TRANSIENT_SIGNATURES):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, (requests.exceptions.RequestException, Web3Exception, OSError)):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.UNKNOWN


def to_sync_error(exc: BaseException) -> SyncError:
    """Wrap an upstream exception into the typed error for its category."""
    if isinstance(exc, SyncError):
        return exc
    category = classify_error(exc)
    message = str(exc) or type(exc).__name__
    if category is ErrorCategory.RANGE_LIMIT:
        return RangeLimitError(message, suggested_range=_suggested_range(message))
    if category is ErrorCategory.MALFORMED:
        return MalformedEventError(message)
    if category is ErrorCategory.UNAVAILABLE:
        return SourceUnavailable(message)
    if category is ErrorCategory.TRANSIENT:
        return TransientSourceError(message)
    return SyncError(message)


def skippable(exc: BaseException) -> bool:
    """Only events that can never project are skipped; anything else is retried."""
    return classify_error(exc) is ErrorCategory.MALFORMED

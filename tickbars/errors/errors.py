"""
Exceptions raised by the ingestion engine.

Exception hierarchy:
- TickbarsError (base)
  - NotFoundError: archive genuinely absent on every mirror (expected, drives fallback)
  - TransientFetchError: network/HTTP failure after retries were exhausted
  - EmptyArchiveError: a download finished with an empty body (retried like any failure)
  - CodecError: malformed or truncated compressed/record data
  - CacheIntegrityError: cached file does not match its sidecar metadata
  - OperationCancelled: cooperative cancellation observed at an I/O boundary
  - ConfigurationError: invalid options or configuration files
"""

from __future__ import annotations

from typing import Any, Optional


class TickbarsError(Exception):
    """Base exception for all tickbars errors."""

    def __init__(
        self,
        message: str,
        *,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.component = component
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.component:
            parts.append(f"[component={self.component}]")
        if self.details:
            parts.append(f"[details={self.details}]")
        return " ".join(parts)


# --- Fetch ---


class NotFoundError(TickbarsError):
    """Raised when every candidate path on every mirror answered 404."""

    def __init__(
        self,
        message: str,
        *,
        relative_paths: Optional[list[str]] = None,
        component: Optional[str] = "fetch",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.relative_paths = relative_paths or []
        details = details or {}
        if relative_paths:
            details["paths"] = relative_paths
        super().__init__(message, component=component, details=details)


class TransientFetchError(TickbarsError):
    """Raised when retries are exhausted without success or a definitive 404."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        last_error: Optional[str] = None,
        attempts: int = 0,
        component: Optional[str] = "fetch",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.url = url
        self.last_error = last_error
        self.attempts = attempts
        details = details or {}
        if url:
            details["url"] = url
        details["attempts"] = attempts
        super().__init__(message, component=component, details=details)


class EmptyArchiveError(TickbarsError):
    """Raised when a download completed with a zero-length body."""

    def __init__(
        self,
        message: str = "downloaded archive is empty",
        *,
        component: Optional[str] = "fetch",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, component=component, details=details)


class CacheIntegrityError(TickbarsError):
    """Raised when a cached file's size or hash disagrees with its sidecar metadata."""

    def __init__(
        self,
        message: str,
        *,
        path: Optional[str] = None,
        component: Optional[str] = "pool",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.path = path
        details = details or {}
        if path:
            details["path"] = path
        super().__init__(message, component=component, details=details)


# --- Codec ---


class CodecError(TickbarsError):
    """Raised for malformed or truncated archive payloads."""

    def __init__(
        self,
        message: str,
        *,
        component: Optional[str] = "codec",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, component=component, details=details)


# --- Run control ---


class OperationCancelled(TickbarsError):
    """Raised when the cancel event is observed at an I/O boundary."""


class ConfigurationError(TickbarsError):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        component: Optional[str] = "config",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.field = field
        self.value = value
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, component=component, details=details)

"""
Custom exceptions for the document verification poller.

This module defines the exception hierarchy used by the API client, the
polling scheduler and the state backends.
"""

from typing import Any


class DocVerifyError(Exception):
    """Base exception for document verification errors."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "DOCVERIFY_ERROR"
        self.context = context or {}


class StatusCheckError(DocVerifyError):
    """Base exception for a failed verification status check."""

    retryable = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, code or "STATUS_CHECK_ERROR", context)
        self.status_code = status_code


class NetworkError(StatusCheckError):
    """Connectivity failure (no HTTP response, status 0)."""

    retryable = True

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "NETWORK_ERROR", 0, context)


class ServerError(StatusCheckError):
    """Server-side failure (5xx)."""

    retryable = True

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "SERVER_ERROR", status_code, context)


class NotFoundError(StatusCheckError):
    """The backend does not know the document (404)."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "NOT_FOUND", 404, context)


class ResponseValidationError(StatusCheckError):
    """The backend answered with a malformed or rejected response."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "VALIDATION_ERROR", status_code, context)


class PollingTimeoutError(StatusCheckError):
    """Polling exceeded its absolute timeout."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "TIMEOUT", None, context)


class ConfigurationError(DocVerifyError):
    """Exception for configuration related errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "CONFIGURATION_ERROR", context)


class StorageError(DocVerifyError):
    """Exception for state backend failures."""

    def __init__(
        self,
        message: str,
        key: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, "STORAGE_ERROR", context)
        self.key = key

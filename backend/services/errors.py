"""
Error taxonomy for the staging pipeline.

Fatal errors (bad caller, bad input, no credits) are surfaced to the API
verbatim. Retryable errors are consumed by services.retry and only escape
once retries are exhausted.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional


class StagingError(Exception):
    """Base class for every error the staging subsystem raises on purpose."""

    code: str = "staging_error"
    retryable: bool = False
    http_status: int = 500

    def __init__(self, message: str, *, context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


# --- Fatal: surfaced to the caller, never retried ---


class Unauthenticated(StagingError):
    code = "unauthenticated"
    http_status = 401


class AccessDenied(StagingError):
    code = "access_denied"
    http_status = 403


class NotFound(StagingError):
    code = "not_found"
    http_status = 404


class InvalidInput(StagingError):
    code = "invalid_input"
    http_status = 400


class InsufficientCredits(StagingError):
    code = "insufficient_credits"
    http_status = 402

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient credits. Required: {required}, Available: {available}",
            context={"required": required, "available": available},
        )
        self.required = required
        self.available = available


class ImageFormatError(StagingError):
    """Bad image bytes: unsupported format or too large. Retrying cannot help."""

    code = "invalid_image"
    http_status = 400


# --- Retryable: handled by the retry engine ---


class TransientNetworkError(StagingError):
    code = "network_error"
    retryable = True
    http_status = 502


class RateLimited(StagingError):
    code = "rate_limited"
    retryable = True
    http_status = 429


class ServiceUnavailable(StagingError):
    code = "service_unavailable"
    retryable = True
    http_status = 503


class OperationTimeout(StagingError):
    code = "timeout"
    retryable = True
    http_status = 504


class CircuitOpenError(StagingError):
    """The AI endpoint breaker is open; the call was rejected without being made."""

    code = "circuit_open"
    http_status = 503


def _status_to_error(status_code: int, message: str) -> StagingError:
    if status_code == 429:
        return RateLimited(message)
    if status_code in (401, 403):
        return AccessDenied(message)
    if status_code == 404:
        return NotFound(message)
    if status_code == 408:
        return OperationTimeout(message)
    if 400 <= status_code < 500:
        return InvalidInput(message)
    return ServiceUnavailable(message)


def classify_exception(exc: BaseException) -> StagingError:
    """
    Map a third-party exception onto the staging taxonomy.

    Recognises httpx transport/status errors, botocore client errors,
    google-genai API errors and asyncio timeouts. Anything else is returned
    as a plain StagingError carrying the original message.
    """
    if isinstance(exc, StagingError):
        return exc

    message = str(exc) or exc.__class__.__name__

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return OperationTimeout(message or "Operation timed out")

    import httpx

    if isinstance(exc, httpx.TimeoutException):
        return OperationTimeout(message)
    if isinstance(exc, httpx.TransportError):
        return TransientNetworkError(message)
    if isinstance(exc, httpx.HTTPStatusError):
        return _status_to_error(exc.response.status_code, message)

    from botocore.exceptions import (
        ClientError,
        ConnectTimeoutError,
        EndpointConnectionError,
        ReadTimeoutError,
    )

    if isinstance(exc, (ConnectTimeoutError, ReadTimeoutError)):
        return OperationTimeout(message)
    if isinstance(exc, EndpointConnectionError):
        return TransientNetworkError(message)
    if isinstance(exc, ClientError):
        status_code = int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 500))
        return _status_to_error(status_code, message)

    from google.genai import errors as genai_errors

    if isinstance(exc, genai_errors.APIError):
        return _status_to_error(int(exc.code or 500), message)

    return StagingError(message)

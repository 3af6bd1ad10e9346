import asyncio

import httpx
from botocore.exceptions import ClientError, EndpointConnectionError

from services.errors import (
    AccessDenied,
    InsufficientCredits,
    InvalidInput,
    OperationTimeout,
    RateLimited,
    ServiceUnavailable,
    StagingError,
    TransientNetworkError,
    classify_exception,
)


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://r2.test/originals/a.jpg")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


def test_staging_errors_pass_through() -> None:
    error = InvalidInput("bad")
    assert classify_exception(error) is error


def test_timeouts_are_classified() -> None:
    assert isinstance(classify_exception(asyncio.TimeoutError()), OperationTimeout)
    assert isinstance(classify_exception(httpx.ReadTimeout("read timed out")), OperationTimeout)


def test_httpx_errors_are_classified() -> None:
    assert isinstance(classify_exception(httpx.ConnectError("connection refused")), TransientNetworkError)
    assert isinstance(classify_exception(_status_error(429)), RateLimited)
    assert isinstance(classify_exception(_status_error(403)), AccessDenied)
    assert isinstance(classify_exception(_status_error(400)), InvalidInput)
    assert isinstance(classify_exception(_status_error(502)), ServiceUnavailable)


def test_botocore_errors_are_classified() -> None:
    throttled = ClientError(
        {"Error": {"Code": "TooManyRequests"}, "ResponseMetadata": {"HTTPStatusCode": 429}},
        "PutObject",
    )

    assert isinstance(classify_exception(throttled), RateLimited)
    assert isinstance(
        classify_exception(EndpointConnectionError(endpoint_url="https://acct.r2.cloudflarestorage.com")),
        TransientNetworkError,
    )


def test_unknown_errors_become_plain_staging_errors() -> None:
    classified = classify_exception(KeyError("staged_url"))

    assert type(classified) is StagingError
    assert classified.http_status == 500


def test_insufficient_credits_carries_amounts() -> None:
    error = InsufficientCredits(required=5, available=2)

    assert error.http_status == 402
    assert error.context == {"required": 5, "available": 2}
    assert error.to_dict() == {
        "code": "insufficient_credits",
        "message": "Insufficient credits. Required: 5, Available: 2",
    }

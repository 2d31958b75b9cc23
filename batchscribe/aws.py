"""boto3 client construction and AWS error classification."""

from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

# botocore retries are disabled: the job tracker owns retry policy.
_CLIENT_CONFIG = Config(retries={"max_attempts": 1, "mode": "standard"})

_TRANSIENT_CODES = frozenset({
    "InternalError",
    "RequestTimeout",
    "RequestTimeoutException",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "ServerException",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
})

_TRANSIENT_CONNECTION_ERRORS = (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


def make_client(service: str, region: Optional[str] = None):
    """Create a boto3 client for `service` without SDK-side retries."""
    return boto3.client(service, region_name=region, config=_CLIENT_CONFIG)


def error_code(exc: BaseException) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "")
    return ""


def is_transient(exc: BaseException) -> bool:
    """True for throttling, server-side and connection-level AWS errors."""
    if isinstance(exc, _TRANSIENT_CONNECTION_ERRORS):
        return True
    if isinstance(exc, ClientError):
        if error_code(exc) in _TRANSIENT_CODES:
            return True
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return status >= 500
    return False


def is_aws_error(exc: BaseException) -> bool:
    return isinstance(exc, (BotoCoreError, ClientError))

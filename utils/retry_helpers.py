"""
Retry utilities for routing provider calls with exponential backoff strategy.
"""
import logging
import json
from typing import Type, Tuple
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
    after_log,
    RetryCallState,
)
import httpx
import pymysql
from config import settings

logger = logging.getLogger(__name__)


class RoutingProviderError(Exception):
    """Routing provider failed (configuration, HTTP, or malformed response).

    A provider that answers "no route exists" returns None instead of raising.
    """

    def __init__(self, message: str, code: str = "PROVIDER_ERROR", status_code: int = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class InvalidProviderResponseError(RoutingProviderError):
    """Routing provider returned a response that could not be parsed."""

    def __init__(self, message: str):
        super().__init__(message, code="INVALID_RESPONSE")


# Define retryable exception types for network errors
NETWORK_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
)

RESPONSE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    InvalidProviderResponseError,
    json.JSONDecodeError,
)


def is_retryable_error(retry_state: RetryCallState) -> bool:
    """
    Check if an exception should be retried.

    Retryable:
    - 5xx errors (server errors)
    - 429 (rate limiting)
    - Network errors (timeout, connection, etc.)
    - Malformed provider responses (InvalidProviderResponseError, JSONDecodeError)

    Non-retryable:
    - 4xx errors (client errors, except 429)
    - Configuration errors (missing API key)
    """
    if retry_state.outcome is None:
        return False

    exception = retry_state.outcome.exception()
    if exception is None:
        return False

    if isinstance(exception, NETWORK_EXCEPTIONS):
        return True

    if isinstance(exception, RESPONSE_EXCEPTIONS):
        logger.warning(f"Retrying due to provider response error: {type(exception).__name__}")
        return True

    if isinstance(exception, httpx.HTTPStatusError):
        status_code = exception.response.status_code
        return status_code >= 500 or status_code == 429

    return False


# Retry decorator for routing provider HTTP calls (Kakao Mobility, ODsay)
routing_api_retry = retry(
    wait=wait_exponential(
        multiplier=1,
        min=settings.routing_base_delay,
        max=settings.routing_max_delay,
    ),  # 1s -> 2s -> 4s (max 10s)
    stop=stop_after_attempt(settings.routing_max_retries),
    retry=is_retryable_error,
    before_sleep=before_sleep_log(logger, logging.WARNING),
    after=after_log(logger, logging.INFO),
    reraise=True,
)


# Retry decorator for persistence writes (transient MySQL errors)
def is_retryable_db_error(retry_state: RetryCallState) -> bool:
    if retry_state.outcome is None:
        return False
    exception = retry_state.outcome.exception()
    if exception is None:
        return False
    # connection lost, lock wait timeout 등
    return isinstance(exception, pymysql.err.OperationalError)


db_write_retry = retry(
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    stop=stop_after_attempt(2),
    retry=is_retryable_db_error,
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)

"""Async HTTP client wrapper with configurable error handling and retry logic.

Used by network-API adapters. Each call opens a fresh ``httpx.AsyncClient``
so adapters stay stateless between steps.

Usage Examples:

    # Raise on errors, no retries
    client = AsyncHttpClient(timeout=30)
    response = await client.post("https://api.example.com/send", json={...})

    # Retry only when the connection was never established
    client = AsyncHttpClient(
        retry_config=RetryConfig(
            max_attempts=3,
            retry_status_codes=set(),
            retry_exceptions=(httpx.ConnectError,),
        )
    )
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0


class ErrorStrategy(Enum):
    """Strategy for handling HTTP errors.

    - RAISE: Re-raise exceptions (default, for strict error handling)
    - LOG_AND_RETURN_NONE: Log error and return None (for graceful degradation)
    """

    RAISE = "raise"
    LOG_AND_RETURN_NONE = "log_and_return_none"


@dataclass
class ErrorConfig:
    """Configuration for error handling behavior.

    Args:
        strategy: How to handle HTTP errors
        log_level: Logging level for errors (default: ERROR)
        include_response_body: Whether to log response body on errors
    """

    strategy: ErrorStrategy = ErrorStrategy.RAISE
    log_level: int = logging.ERROR
    include_response_body: bool = False


@dataclass
class RetryConfig:
    """Configuration for retry logic with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (including initial attempt)
        retry_status_codes: HTTP status codes that should trigger a retry
        backoff_factor: Multiplier for exponential backoff (delay = backoff_factor * 2^attempt)
        max_backoff: Maximum backoff delay in seconds
        retry_exceptions: Exception types that should trigger a retry
    """

    max_attempts: int = 3
    retry_status_codes: set[int] = field(default_factory=lambda: {500, 502, 503, 504})
    backoff_factor: float = 1.0
    max_backoff: float = 30.0
    retry_exceptions: tuple[type[Exception], ...] = (
        httpx.ConnectError,
        httpx.PoolTimeout,
    )


class AsyncHttpClient:
    """Async HTTP client with configurable error handling and retries.

    Args:
        timeout: Request timeout in seconds
        connect_timeout: Connection timeout in seconds
        error_config: Error handling configuration
        retry_config: Retry configuration (None = no retries)
    """

    def __init__(
        self,
        timeout: float | None = None,
        connect_timeout: float | None = None,
        error_config: ErrorConfig | None = None,
        retry_config: RetryConfig | None = None,
    ):
        """Initialize the async HTTP client."""
        self.timeout = timeout if timeout is not None else DEFAULT_TIMEOUT_SECONDS
        self.connect_timeout = (
            connect_timeout if connect_timeout is not None else DEFAULT_CONNECT_TIMEOUT_SECONDS
        )
        self.error_config = error_config or ErrorConfig()
        self.retry_config = retry_config

    async def post(self, url: str, **kwargs) -> httpx.Response | None:
        """Perform an async POST request.

        Args:
            url: Target URL
            **kwargs: Additional arguments passed to httpx (json, data, headers, etc.)

        Returns:
            Response object, or None if error_strategy is LOG_AND_RETURN_NONE

        Raises:
            httpx.HTTPError: If error_strategy is RAISE and request fails
        """
        return await self._request("POST", url, **kwargs)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response | None:
        """Execute an HTTP request with error handling and optional retries."""
        attempts = self.retry_config.max_attempts if self.retry_config is not None else 1
        last_exception: Exception | None = None

        for attempt in range(attempts):
            try:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout)
                ) as client:
                    response = await client.request(method, url, **kwargs)
                    response.raise_for_status()
                    return response
            except httpx.HTTPStatusError as e:
                last_exception = e
                if not self._should_retry(e, attempt, attempts):
                    break
            except httpx.RequestError as e:
                last_exception = e
                if not self._should_retry(e, attempt, attempts):
                    break
            await asyncio.sleep(self._backoff(attempt))

        return self._handle_error(last_exception, method, url)

    def _should_retry(self, error: Exception, attempt: int, attempts: int) -> bool:
        """Return whether a failed attempt should be retried."""
        if self.retry_config is None or attempt + 1 >= attempts:
            return False
        if isinstance(error, httpx.HTTPStatusError):
            retry = error.response.status_code in self.retry_config.retry_status_codes
        else:
            retry = isinstance(error, self.retry_config.retry_exceptions)
        if retry:
            logger.warning(
                "HTTP request failed with %s; retrying (attempt %s/%s)",
                type(error).__name__,
                attempt + 1,
                attempts,
            )
        return retry

    def _backoff(self, attempt: int) -> float:
        assert self.retry_config is not None
        return min(self.retry_config.backoff_factor * (2**attempt), self.retry_config.max_backoff)

    def _handle_error(self, error: Exception | None, method: str, url: str) -> httpx.Response | None:
        """Handle HTTP errors according to configured strategy."""
        assert error is not None
        if self.error_config.strategy == ErrorStrategy.RAISE:
            raise error

        error_msg = f"HTTP {method} {url} failed: {error}"
        if isinstance(error, httpx.HTTPStatusError) and self.error_config.include_response_body:
            error_msg += f"\nResponse body: {error.response.text}"
        logger.log(self.error_config.log_level, error_msg)
        return None

"""
Retry with exponential backoff for external adapter calls.

An operation is an async callable returning AdapterResult (or raising).
Failures with a retryable error code, and raised exceptions, are retried up
to config.max_retries times. A token-expired code triggers one token refresh
and an immediate re-attempt that does not count as a retry.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from syncengine.adapters.base import AdapterResult, ExternalApiError
from syncengine.config import get_settings

logger = logging.getLogger(__name__)

RETRYABLE_CODES = frozenset({
    "NETWORK_ERROR",
    "TIMEOUT",
    "RATE_LIMITED",
    "SERVER_ERROR",
    "ECONNRESET",
    "ECONNREFUSED",
    "ETIMEDOUT",
    "ENOTFOUND",
    "500",
    "502",
    "503",
    "504",
    "429",
})

TOKEN_EXPIRED_CODES = frozenset({"TOKEN_EXPIRED", "401", "UNAUTHORIZED", "INVALID_TOKEN"})

Operation = Callable[[], Awaitable[AdapterResult]]
TokenRefreshFn = Callable[[], Awaitable[bool]]


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        settings = get_settings()
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
        )


@dataclass
class RetryResult:
    success: bool
    result: Optional[AdapterResult] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retry_count: int = 0
    token_refreshed: bool = False


def is_retryable_error(error_code: Optional[str]) -> bool:
    return error_code in RETRYABLE_CODES


def is_token_expired_error(error_code: Optional[str]) -> bool:
    return error_code in TOKEN_EXPIRED_CODES


def calculate_retry_delay(attempt: int, base_delay_ms: int, max_delay_ms: int) -> float:
    """Delay in seconds before retry number `attempt` (0-based)."""
    return min(base_delay_ms * (2 ** attempt), max_delay_ms) / 1000.0


async def retry_with_backoff(
    operation: Operation,
    config: Optional[RetryConfig] = None,
    on_token_expired: Optional[TokenRefreshFn] = None,
) -> RetryResult:
    config = config or RetryConfig.from_settings()
    retry_count = 0
    token_refreshed = False
    last_error: Optional[str] = None
    last_code: Optional[str] = None

    while retry_count <= config.max_retries:
        try:
            result = await operation()
        except ExternalApiError as exc:
            result = AdapterResult.failure(exc.message, exc.code)
        except Exception as exc:  # adapter bugs and transport errors alike
            last_error = str(exc) or exc.__class__.__name__
            last_code = "EXCEPTION"
            result = None

        if result is not None:
            if result.success:
                return RetryResult(
                    success=True,
                    result=result,
                    retry_count=retry_count,
                    token_refreshed=token_refreshed,
                )

            if is_token_expired_error(result.error_code) and on_token_expired and not token_refreshed:
                if await on_token_expired():
                    token_refreshed = True
                    logger.info("Token refreshed; re-attempting operation")
                    continue
                return RetryResult(
                    success=False,
                    error="Token refresh failed",
                    error_code="TOKEN_REFRESH_FAILED",
                    retry_count=retry_count,
                )

            if not is_retryable_error(result.error_code):
                return RetryResult(
                    success=False,
                    result=result,
                    error=result.error,
                    error_code=result.error_code,
                    retry_count=retry_count,
                    token_refreshed=token_refreshed,
                )

            last_error = result.error
            last_code = result.error_code

        if retry_count >= config.max_retries:
            break

        delay = calculate_retry_delay(retry_count, config.base_delay_ms, config.max_delay_ms)
        logger.debug("Attempt %d failed (%s); retrying in %.2fs", retry_count + 1, last_code, delay)
        await asyncio.sleep(delay)
        retry_count += 1

    return RetryResult(
        success=False,
        error=last_error or "Max retries exceeded",
        error_code=last_code or "MAX_RETRIES",
        retry_count=retry_count,
        token_refreshed=token_refreshed,
    )

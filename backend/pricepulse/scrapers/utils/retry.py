"""Retry helpers with exponential backoff."""

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
import structlog

from pricepulse.core.exceptions import TransientNetworkError


logger = structlog.get_logger(__name__)


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "adapter_request_retry",
        attempt=retry_state.attempt_number,
        wait_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
        error=str(exc),
    )


def adapter_retry(attempts: int = 3, min_wait: float = 1.0, max_wait: float = 10.0):
    """Retry decorator for adapter HTTP calls.

    Only TransientNetworkError is retried; non-retryable fetch errors
    propagate on the first attempt.
    """
    return retry(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(TransientNetworkError),
        before_sleep=_log_before_sleep,
        reraise=True,
    )


def compute_backoff(attempt: int, base: float, multiplier: float, cap: float) -> float:
    """Delay before retry number ``attempt`` (1-based) of a queued job.

    Args:
        attempt: Attempts already made
        base: Delay after the first failure, in seconds
        multiplier: Growth factor per attempt
        cap: Upper bound in seconds

    Returns:
        min(cap, base * multiplier ** (attempt - 1))
    """
    exponent = max(0, attempt - 1)
    return min(cap, base * (multiplier ** exponent))

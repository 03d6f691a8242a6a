"""
Retry policy for closure rebuild tasks.

A failed rebuild leaves the user's previous closure in place, so retrying
is always safe. What differs per failure is whether retrying can help:

- TenantIsolationError: a broken invariant, dead-lettered at once
- GraphReadError, ClosureSwapError, deadline overrun, anything else:
  retried with exponential backoff and jitter until max_attempts,
  then dead-lettered

Delay for retry n (0-based): min(base * 2^n +/- jitter, max_delay), at least 1s.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Optional

from customer_access.config.rebuild_settings import RebuildSettings
from customer_access.errors import (
    ClosureSwapError,
    GraphReadError,
    RebuildTimeoutError,
    TenantIsolationError,
)

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 4
BASE_DELAY_SECONDS = 30.0
MAX_DELAY_SECONDS = 1800.0
JITTER_FACTOR = 0.25
MIN_DELAY_SECONDS = 1.0


class ErrorCategory(str, Enum):
    """Failure classes, stored as the task's error_code."""
    GRAPH_READ = "graph_read"
    SWAP_FAILED = "swap_failed"
    TIMEOUT = "timeout"
    TENANT_VIOLATION = "tenant_violation"
    UNKNOWN = "unknown"


# Checked in order; first match wins
_CATEGORY_BY_ERROR = (
    (TenantIsolationError, ErrorCategory.TENANT_VIOLATION),
    (GraphReadError, ErrorCategory.GRAPH_READ),
    (ClosureSwapError, ErrorCategory.SWAP_FAILED),
    (RebuildTimeoutError, ErrorCategory.TIMEOUT),
    (TimeoutError, ErrorCategory.TIMEOUT),
)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attributes:
        max_attempts: Attempts, the first run included, before dead-lettering
        base_delay_seconds: Delay before the first retry
        max_delay_seconds: Delay cap
        jitter_factor: Relative jitter (0.25 = +/- 25%)
    """
    max_attempts: int = MAX_ATTEMPTS
    base_delay_seconds: float = BASE_DELAY_SECONDS
    max_delay_seconds: float = MAX_DELAY_SECONDS
    jitter_factor: float = JITTER_FACTOR

    @classmethod
    def from_settings(cls, settings: RebuildSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.base_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
            jitter_factor=settings.jitter_factor,
        )


@dataclass
class RetryDecision:
    """Outcome for one failed attempt: retry at next_retry_at, or dead-letter."""
    should_retry: bool
    delay_seconds: float
    next_retry_at: Optional[datetime]
    move_to_dlq: bool
    reason: str

    @classmethod
    def dead_letter(cls, reason: str) -> "RetryDecision":
        return cls(
            should_retry=False,
            delay_seconds=0,
            next_retry_at=None,
            move_to_dlq=True,
            reason=reason,
        )


def categorize_error(error: BaseException) -> ErrorCategory:
    for error_type, category in _CATEGORY_BY_ERROR:
        if isinstance(error, error_type):
            return category
    return ErrorCategory.UNKNOWN


def calculate_backoff(
    attempt: int,
    policy: RetryPolicy = RetryPolicy(),
) -> float:
    """
    Delay in seconds before retry number `attempt` (0 for the first retry).
    """
    delay = policy.base_delay_seconds * (2 ** attempt)
    spread = delay * policy.jitter_factor
    delay += random.uniform(-spread, spread)
    return max(min(delay, policy.max_delay_seconds), MIN_DELAY_SECONDS)


def should_retry(
    error_category: ErrorCategory,
    attempts_made: int,
    policy: RetryPolicy = RetryPolicy(),
) -> RetryDecision:
    """
    Decide what happens to a task whose latest attempt failed.

    Args:
        error_category: Classified failure
        attempts_made: Attempts executed so far, the failed one included
        policy: Retry policy

    Returns:
        RetryDecision; move_to_dlq is set when no retry will follow
    """
    if error_category == ErrorCategory.TENANT_VIOLATION:
        return RetryDecision.dead_letter(
            "Tenant isolation violation - requires manual intervention"
        )

    if attempts_made >= policy.max_attempts:
        return RetryDecision.dead_letter(
            f"Max attempts ({policy.max_attempts}) exhausted"
        )

    delay = calculate_backoff(attempt=max(attempts_made - 1, 0), policy=policy)
    label = "Unknown error" if error_category == ErrorCategory.UNKNOWN else (
        f"Transient error ({error_category.value})"
    )
    return RetryDecision(
        should_retry=True,
        delay_seconds=delay,
        next_retry_at=datetime.now(timezone.utc) + timedelta(seconds=delay),
        move_to_dlq=False,
        reason=(
            f"{label} - retry in {delay:.0f}s "
            f"(attempt {attempts_made + 1}/{policy.max_attempts})"
        ),
    )


def log_retry_decision(
    task_id: str,
    tenant_id: str,
    user_id: str,
    error_category: ErrorCategory,
    decision: RetryDecision,
) -> None:
    log_extra = {
        "task_id": task_id,
        "tenant_id": tenant_id,
        "user_id": user_id,
        "error_category": error_category.value,
        "should_retry": decision.should_retry,
        "delay_seconds": decision.delay_seconds,
        "move_to_dlq": decision.move_to_dlq,
        "reason": decision.reason,
    }
    if decision.next_retry_at:
        log_extra["next_retry_at"] = decision.next_retry_at.isoformat()

    if decision.move_to_dlq:
        logger.warning("rebuild.dead_letter_decision", extra=log_extra)
    else:
        logger.info("rebuild.retry", extra=log_extra)

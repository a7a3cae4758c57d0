"""SuaTalk Analysis - Retry/backoff policy.

Exponential backoff: delay(retry_count) = 30s * 4 ** retry_count.

Retry Semantics:
----------------
retry_count is the number of failures recorded *before* the failure being
handled, and is read from the Recording so the sequence survives a Job
Store restart:
  - Attempt 1 fails (retry_count 0) -> retry in 30s, retry_count becomes 1
  - Attempt 2 fails (retry_count 1) -> retry in 120s, retry_count becomes 2
  - Attempt 3 fails (retry_count 2) -> retry in 480s, retry_count becomes 3
  - Attempt 4 fails (retry_count 3) -> no retry; retry_count stays capped at 3

Thus 3 retries = 4 total attempts.
"""

from analysis.config import MAX_RETRIES, RETRY_BASE_DELAY_SECONDS, RETRY_MULTIPLIER


def retry_delay_seconds(retry_count: int) -> int:
    """Compute the delay before the next attempt.

    Args:
        retry_count: Failures recorded before the one being handled.

    Returns:
        Delay in seconds (30, 120, 480 for retry_count 0, 1, 2).
    """
    if retry_count < 0:
        raise ValueError(f"retry_count must be >= 0, got {retry_count}")
    return RETRY_BASE_DELAY_SECONDS * RETRY_MULTIPLIER**retry_count


def can_retry(retry_count: int) -> bool:
    """Return True if another automatic retry is allowed.

    Args:
        retry_count: Failures recorded before the one being handled.
    """
    return retry_count < MAX_RETRIES


def next_retry_count(retry_count: int) -> int:
    """Increment a retry counter without exceeding the cap."""
    return min(retry_count + 1, MAX_RETRIES)

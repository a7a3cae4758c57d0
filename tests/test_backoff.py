"""Tests for the retry/backoff policy.

- Delays: 30s, 120s, 480s for retry_count 0, 1, 2
- 3 retries max (4 total attempts)
"""

import pytest

from analysis.backoff import can_retry, next_retry_count, retry_delay_seconds
from analysis.config import MAX_ATTEMPTS_TOTAL, MAX_RETRIES


class TestRetryDelay:
    def test_delay_sequence(self):
        assert [retry_delay_seconds(n) for n in range(3)] == [30, 120, 480]

    def test_negative_retry_count_rejected(self):
        with pytest.raises(ValueError):
            retry_delay_seconds(-1)


class TestRetryBound:
    def test_policy_constants(self):
        assert MAX_RETRIES == 3
        assert MAX_ATTEMPTS_TOTAL == 4

    @pytest.mark.parametrize("retry_count,expected", [(0, True), (1, True), (2, True), (3, False)])
    def test_can_retry(self, retry_count, expected):
        assert can_retry(retry_count) is expected

    def test_next_retry_count_is_capped(self):
        """Incrementing never pushes the counter past the cap."""
        count = 0
        for _ in range(10):
            count = next_retry_count(count)
        assert count == MAX_RETRIES

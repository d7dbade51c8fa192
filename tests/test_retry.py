"""Tests for the backoff retrier."""

from __future__ import annotations

import asyncio

import pytest

from spo_reclaim.errors import PermanentRemoteError, RemoteStoreError, TransientRemoteError
from spo_reclaim.utils.retry import Retrier, is_throttling_error


class FlakyOperation:
    def __init__(self, failures: list[Exception], result="ok"):
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


class TestThrottlingDetection:
    @pytest.mark.parametrize("message", [
        "Request was THROTTLED by the server",
        "HTTP 429 Too Many Requests",
        "Rate Limit exceeded",
    ])
    def test_keywords_are_case_insensitive(self, message):
        assert is_throttling_error(RemoteStoreError(message))

    def test_transient_error_type(self):
        assert is_throttling_error(TransientRemoteError("busy"))

    def test_ordinary_error(self):
        assert not is_throttling_error(RemoteStoreError("HTTP 500 internal error"))


class TestRetrier:
    def test_success_first_attempt_does_not_sleep(self, sleep):
        op = FlakyOperation([])
        retrier = Retrier(max_retries=1, sleep=sleep)

        assert asyncio.run(retrier.call(op, "op")) == "ok"
        assert op.calls == 1
        assert sleep.delays == []

    def test_default_allows_a_single_retry(self, sleep):
        op = FlakyOperation([RemoteStoreError("boom")])
        retrier = Retrier(sleep=sleep)

        assert asyncio.run(retrier.call(op, "op")) == "ok"
        assert op.calls == 2
        assert sleep.delays == [5]

    def test_backoff_doubles_per_attempt(self, sleep):
        op = FlakyOperation([RemoteStoreError("boom")] * 3)
        retrier = Retrier(max_retries=3, base_delay=5, sleep=sleep)

        asyncio.run(retrier.call(op, "op"))
        assert sleep.delays == [5, 10, 20]

    def test_throttling_adds_fixed_cooldown(self, sleep):
        op = FlakyOperation([RemoteStoreError("429 throttled"), RemoteStoreError("boom")])
        retrier = Retrier(max_retries=2, base_delay=5, throttle_cooldown=30, sleep=sleep)

        asyncio.run(retrier.call(op, "op"))
        assert sleep.delays == [5 + 30, 10]

    def test_throttled_last_attempt_still_cools_down(self, sleep):
        op = FlakyOperation([RemoteStoreError("429 throttled")] * 2)
        retrier = Retrier(max_retries=1, base_delay=5, throttle_cooldown=30, sleep=sleep)

        with pytest.raises(PermanentRemoteError):
            asyncio.run(retrier.call(op, "op"))

        assert op.calls == 2
        assert sleep.delays == [35, 30]

    def test_unthrottled_exhaustion_has_no_cooldown(self, sleep):
        op = FlakyOperation([RemoteStoreError("boom")] * 2)
        retrier = Retrier(max_retries=1, base_delay=5, throttle_cooldown=30, sleep=sleep)

        with pytest.raises(PermanentRemoteError):
            asyncio.run(retrier.call(op, "op"))
        assert sleep.delays == [5]

    def test_exhausted_retries_raise_permanent_error(self, sleep):
        op = FlakyOperation([RemoteStoreError("boom")] * 5)
        retrier = Retrier(max_retries=2, sleep=sleep)

        with pytest.raises(PermanentRemoteError) as exc_info:
            asyncio.run(retrier.call(op, "delete version"))

        assert op.calls == 3
        assert "delete version" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, RemoteStoreError)

    def test_permanent_errors_are_not_retried(self, sleep):
        op = FlakyOperation([PermanentRemoteError("404 not found")])
        retrier = Retrier(max_retries=3, sleep=sleep)

        with pytest.raises(PermanentRemoteError):
            asyncio.run(retrier.call(op, "op"))
        assert op.calls == 1
        assert sleep.delays == []

    def test_attempt_count_is_per_call(self, sleep):
        retrier = Retrier(max_retries=1, sleep=sleep)
        first = FlakyOperation([RemoteStoreError("boom")])
        second = FlakyOperation([RemoteStoreError("boom")])

        asyncio.run(retrier.call(first, "first"))
        asyncio.run(retrier.call(second, "second"))

        assert first.calls == 2
        assert second.calls == 2
        assert sleep.delays == [5, 5]

    def test_wait_for_attempt(self):
        retrier = Retrier(base_delay=5, throttle_cooldown=30)
        assert [retrier.wait_for_attempt(k) for k in range(4)] == [5, 10, 20, 40]
        assert retrier.wait_for_attempt(2, throttled=True) == 50

    def test_every_attempt_is_logged(self, sleep, caplog):
        op = FlakyOperation([RemoteStoreError("boom")])
        retrier = Retrier(max_retries=1, sleep=sleep)

        with caplog.at_level("INFO", logger="spo_reclaim.utils.retry"):
            asyncio.run(retrier.call(op, "download a.pptx"))

        messages = [r.getMessage() for r in caplog.records]
        assert any("attempt 1/2" in m and "failed" not in m for m in messages)
        assert any("attempt 1/2 failed" in m for m in messages)
        assert any("attempt 2/2" in m for m in messages)
        assert any("succeeded" in m for m in messages)

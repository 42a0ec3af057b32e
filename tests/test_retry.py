"""Tests for the HTTP retry policy."""

from __future__ import annotations

import httpx
import pytest

from deploykit.config import HttpConfig
from deploykit.retry import RetryPolicy, call_with_retry, is_transient

REQUEST = httpx.Request("GET", "https://api.example.com/x")


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    response = httpx.Response(status_code, request=REQUEST)
    return httpx.HTTPStatusError("error", request=REQUEST, response=response)


class Flaky:
    """Fails ``failures`` times, then returns "ok"."""

    def __init__(self, failures: int, error: Exception) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestRetryPolicy:
    def test_default_schedule(self) -> None:
        policy = RetryPolicy()
        assert policy.max_attempts == 4
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_from_http_config(self) -> None:
        policy = RetryPolicy.from_http_config(HttpConfig(max_attempts=2, backoff_seconds=0.5))
        assert policy.max_attempts == 2
        assert policy.delay_for(2) == 1.0


class TestIsTransient:
    def test_transport_errors(self) -> None:
        assert is_transient(httpx.ConnectError("refused"))
        assert is_transient(httpx.ReadTimeout("slow"))

    @pytest.mark.parametrize("status_code", [429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status_code: int) -> None:
        assert is_transient(_status_error(status_code))

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404, 422])
    def test_client_errors(self, status_code: int) -> None:
        assert not is_transient(_status_error(status_code))


class TestCallWithRetry:
    def test_success_first_try(self) -> None:
        sleeps: list[float] = []
        assert call_with_retry(lambda: "ok", sleep=sleeps.append) == "ok"
        assert sleeps == []

    def test_recovers_after_transient_failures(self) -> None:
        sleeps: list[float] = []
        operation = Flaky(2, httpx.ConnectError("refused"))

        assert call_with_retry(operation, sleep=sleeps.append) == "ok"
        assert operation.calls == 3
        assert sleeps == [2.0, 4.0]

    def test_gives_up_after_four_attempts(self) -> None:
        sleeps: list[float] = []
        operation = Flaky(10, _status_error(503))

        with pytest.raises(httpx.HTTPStatusError):
            call_with_retry(operation, sleep=sleeps.append)

        assert operation.calls == 4
        assert sleeps == [2.0, 4.0, 8.0]

    def test_non_transient_not_retried(self) -> None:
        sleeps: list[float] = []
        operation = Flaky(10, _status_error(404))

        with pytest.raises(httpx.HTTPStatusError):
            call_with_retry(operation, sleep=sleeps.append)

        assert operation.calls == 1
        assert sleeps == []

    def test_other_exceptions_propagate(self) -> None:
        operation = Flaky(1, ValueError("bad json"))

        with pytest.raises(ValueError):
            call_with_retry(operation, sleep=lambda _: None)

        assert operation.calls == 1

    def test_single_attempt_policy(self) -> None:
        operation = Flaky(1, httpx.ConnectError("refused"))

        with pytest.raises(httpx.ConnectError):
            call_with_retry(operation, policy=RetryPolicy(max_attempts=1), sleep=lambda _: None)

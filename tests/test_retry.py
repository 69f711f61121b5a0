import threading
import time

import pytest

from hybrid_rag.cancellation import CancelToken, ensure_token
from hybrid_rag.errors import Canceled
from hybrid_rag.retry import backoff_delay, call_with_retry


class Flaky:
    def __init__(self, failures, error=ConnectionError):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"failure {self.calls}")
        return "ok"


def test_backoff_doubles():
    assert [backoff_delay(3.0, k) for k in (1, 2, 3)] == [3.0, 6.0, 12.0]
    assert backoff_delay(0.0, 4) == 0.0


def test_succeeds_within_budget():
    fn = Flaky(failures=2)
    assert call_with_retry(fn, max_retries=2, backoff_seconds=0) == "ok"
    assert fn.calls == 3


def test_exhausted_budget_reraises_last_error():
    fn = Flaky(failures=5)
    with pytest.raises(ConnectionError, match="failure 3"):
        call_with_retry(fn, max_retries=2, backoff_seconds=0)
    assert fn.calls == 3


def test_zero_retries_means_one_attempt():
    fn = Flaky(failures=1)
    with pytest.raises(ConnectionError):
        call_with_retry(fn, max_retries=0, backoff_seconds=0)
    assert fn.calls == 1


def test_only_listed_errors_are_retried():
    fn = Flaky(failures=1, error=KeyError)
    with pytest.raises(KeyError):
        call_with_retry(fn, max_retries=3, backoff_seconds=0, retry_on=(ConnectionError,))
    assert fn.calls == 1


def test_cancel_interrupts_backoff():
    token = CancelToken()
    fn = Flaky(failures=10)
    threading.Timer(0.1, token.cancel).start()
    started = time.monotonic()
    with pytest.raises(Canceled):
        call_with_retry(fn, max_retries=3, backoff_seconds=30, token=token)
    assert time.monotonic() - started < 5
    assert fn.calls == 1


def test_cancelled_before_first_attempt():
    token = CancelToken()
    token.cancel()
    fn = Flaky(failures=0)
    with pytest.raises(Canceled):
        call_with_retry(fn, max_retries=3, backoff_seconds=0, token=token)
    assert fn.calls == 0


def test_child_token_follows_parent_only():
    parent = CancelToken()
    child = parent.child()
    child.cancel()
    assert child.cancelled
    assert not parent.cancelled

    other = parent.child()
    parent.cancel()
    assert other.cancelled


def test_deadline_expires():
    token = CancelToken(timeout=0.05)
    assert token.remaining() <= 0.05
    assert token.wait(5)
    assert token.cancelled
    with pytest.raises(Canceled):
        token.raise_if_cancelled("slow thing")


def test_child_inherits_earlier_deadline():
    parent = CancelToken(timeout=0.05)
    child = parent.child(timeout=60)
    assert child.remaining() <= 0.05


def test_ensure_token():
    token = CancelToken()
    assert ensure_token(token) is token
    assert not ensure_token(None).cancelled

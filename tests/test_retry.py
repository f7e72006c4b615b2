import pytest

from x402_facilitator.errors import ChainRejection, TransportError
from x402_facilitator.retry import NO_RETRY, RetryConfig, call_with_retries


class Flaky:
    def __init__(self, failures: int, error: Exception = None):
        self.failures = failures
        self.error = error or TransportError("connection reset")
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


def test_retries_transient_failures() -> None:
    delays = []
    fn = Flaky(failures=2)

    assert call_with_retries(fn, RetryConfig(max_retries=3, jitter=0), sleep=delays.append) == "ok"
    assert fn.calls == 3
    assert delays == [0.25, 0.5]


def test_gives_up_after_max_retries() -> None:
    fn = Flaky(failures=10)
    with pytest.raises(TransportError):
        call_with_retries(fn, RetryConfig(max_retries=2), sleep=lambda _: None)
    assert fn.calls == 3


def test_no_retry() -> None:
    fn = Flaky(failures=1)
    with pytest.raises(TransportError):
        call_with_retries(fn, NO_RETRY, sleep=lambda _: None)
    assert fn.calls == 1


def test_other_errors_are_not_retried() -> None:
    fn = Flaky(failures=1, error=ChainRejection("nonce too low"))
    with pytest.raises(ChainRejection):
        call_with_retries(fn, RetryConfig(), sleep=lambda _: None)
    assert fn.calls == 1


def test_delay_is_capped() -> None:
    config = RetryConfig(base_delay=1.0, max_delay=4.0, jitter=0)
    assert [config.calculate_delay(attempt) for attempt in range(5)] == [1.0, 2.0, 4.0, 4.0, 4.0]


def test_jitter_stays_in_range() -> None:
    config = RetryConfig(base_delay=1.0, jitter=0.2)
    for _ in range(50):
        assert 0.8 <= config.calculate_delay(0) <= 1.2

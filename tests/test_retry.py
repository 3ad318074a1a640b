import pytest

from postflow_server.engine.retry import Backoff, RetryPolicy, compute_interval, retry, retrying
from postflow_server.errors import TerminalAutomationError, TransientAutomationError


class Flaky:
    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.calls = 0
        self.error = error or TransientAutomationError("timeout")

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


def test_compute_interval() -> None:
    assert [compute_interval(1.0, n, Backoff.NONE) for n in (1, 2, 3)] == [1.0, 1.0, 1.0]
    assert [compute_interval(1.0, n, Backoff.LINEAR) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]
    assert [compute_interval(1.0, n, Backoff.EXPONENTIAL) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]
    assert compute_interval(1.0, 10, Backoff.EXPONENTIAL, max_interval=5.0) == 5.0


@pytest.mark.asyncio
async def test_retry_exhausts_attempts_and_reraises_last_error(sleep) -> None:
    error = TransientAutomationError("always down")
    operation = Flaky(failures=10, error=error)

    with pytest.raises(TransientAutomationError) as exc_info:
        await retry(operation, 1.0, 3, Backoff.EXPONENTIAL, sleep=sleep)

    assert exc_info.value is error
    assert operation.calls == 3
    assert sleep.calls == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_returns_first_success(sleep) -> None:
    operation = Flaky(failures=1)
    assert await retry(operation, 0.5, 3, "linear", sleep=sleep) == "ok"
    assert operation.calls == 2
    assert sleep.calls == [0.5]


@pytest.mark.asyncio
async def test_retry_gives_up_on_terminal_errors(sleep) -> None:
    operation = Flaky(failures=5, error=TerminalAutomationError("blacklisted"))
    with pytest.raises(TerminalAutomationError):
        await retry(operation, 1.0, 3, sleep=sleep)
    assert operation.calls == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_retry_rejects_zero_attempts() -> None:
    with pytest.raises(ValueError):
        await retry(Flaky(0), 1.0, 0)


@pytest.mark.asyncio
async def test_retrying_decorator_uses_policy() -> None:
    calls = []

    @retrying(RetryPolicy(max_attempts=2, base_interval=0.0, backoff=Backoff.NONE))
    async def fetch(value: int) -> int:
        calls.append(value)
        if len(calls) == 1:
            raise TransientAutomationError("blip")
        return value * 2

    assert await fetch(21) == 42
    assert calls == [21, 21]

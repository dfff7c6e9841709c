import pytest

from wabridge.config.reliability_config import RetryConfig
from wabridge.infra.reliability.retry import compute_delay_ms, is_permanent, mark_permanent, retry_async


class Flaky:
    def __init__(self, failures, error=ConnectionError):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"failure {self.calls}")
        return "ok"


def fast_config(**overrides):
    values = dict(max_attempts=2, initial_delay_ms=1, max_delay_ms=1)
    values.update(overrides)
    return RetryConfig(**values)


@pytest.mark.asyncio
async def test_succeeds_after_one_retry():
    func = Flaky(failures=1)

    assert await retry_async(func, retry_config=fast_config()) == "ok"
    assert func.calls == 2


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    func = Flaky(failures=5)

    with pytest.raises(ConnectionError):
        await retry_async(func, retry_config=fast_config())
    assert func.calls == 2


@pytest.mark.asyncio
async def test_permanent_errors_are_not_retried():
    async def fail():
        fail.calls += 1
        raise mark_permanent(ValueError("bad request"))
    fail.calls = 0

    with pytest.raises(ValueError):
        await retry_async(fail, retry_config=fast_config(max_attempts=5))
    assert fail.calls == 1


@pytest.mark.asyncio
async def test_retry_condition_rejects_error():
    func = Flaky(failures=1, error=KeyError)
    config = fast_config(retry_condition=lambda e: isinstance(e, ConnectionError))

    with pytest.raises(KeyError):
        await retry_async(func, retry_config=config)
    assert func.calls == 1


def test_permanent_marking():
    assert not is_permanent(RuntimeError("x"))
    assert is_permanent(mark_permanent(RuntimeError("x")))


def test_compute_delay_is_capped():
    config = RetryConfig(initial_delay_ms=100, max_delay_ms=250, backoff_factor=2.0)

    assert compute_delay_ms(config, 1) == 100
    assert compute_delay_ms(config, 2) == 200
    assert compute_delay_ms(config, 3) == 250


@pytest.mark.asyncio
async def test_single_attempt_policy_never_retries():
    func = Flaky(failures=1)

    with pytest.raises(ConnectionError):
        await retry_async(func, retry_config=fast_config(max_attempts=1))
    assert func.calls == 1

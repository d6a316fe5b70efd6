import pytest

from parlor.utils.retry import backoff_s, retry_llm, retry_platform, retry_with_backoff


async def test_retry_llm_succeeds_after_failures() -> None:
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("reset")
        return "ok"

    assert await retry_llm(flaky, max_attempts=3, delay_ms=0) == "ok"
    assert len(calls) == 3


async def test_retry_llm_raises_last_error() -> None:
    calls = []

    async def broken():
        calls.append(1)
        raise ValueError(f"attempt {len(calls)}")

    with pytest.raises(ValueError, match="attempt 2"):
        await retry_llm(broken, max_attempts=2, delay_ms=0)


async def test_retry_platform_uses_attempt_limit() -> None:
    calls = []

    async def broken():
        calls.append(1)
        raise OSError("down")

    with pytest.raises(OSError):
        await retry_platform(broken, max_attempts=4, base_ms=0)
    assert len(calls) == 4


def test_backoff_is_capped() -> None:
    assert backoff_s(1000, 32000, 10) == 32.0
    assert backoff_s(1000, 32000, 0) <= 1.2
    assert backoff_s(500, 500, 3, exponential=False) == 0.5
    assert backoff_s(0, 1000, 2) == 0.0


@pytest.mark.parametrize("max_attempts", [0, 1])
async def test_single_attempt_raises_without_retrying(max_attempts) -> None:
    calls = []

    async def broken():
        calls.append(1)
        raise KeyError("gone")

    with pytest.raises(KeyError):
        await retry_with_backoff(broken, max_attempts=max_attempts, base_ms=0)
    assert len(calls) == 1

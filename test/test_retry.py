import pytest

from fakes import EDITED, FakeBackend, RecordingSleep
from image_editor.errors import EditBackendError, RateLimitedError
from image_editor.models import ErrorKind
from image_editor.retry import RetryingExecutor


def _executor(sleep, **kwargs) -> RetryingExecutor:
    return RetryingExecutor(sleep=sleep, **kwargs)


@pytest.mark.asyncio
async def test_success_on_first_attempt():
    """A successful operation is returned without any delay."""
    backend = FakeBackend()
    sleep = RecordingSleep()

    result = await _executor(sleep).execute(lambda: backend.edit("AAA", "image/png", "x"))

    assert result == EDITED
    assert len(backend.calls) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_always_rate_limited_is_bounded():
    """Three attempts, two delays of 1s and 2s, then the rate limit error surfaces."""
    backend = FakeBackend(always_raise=RateLimitedError("429 Too Many Requests"))
    sleep = RecordingSleep()

    with pytest.raises(RateLimitedError):
        await _executor(sleep).execute(
            lambda: backend.edit("AAA", "image/png", "x"), max_attempts=3
        )

    assert len(backend.calls) == 3
    assert sleep.delays == [1.0, 2.0]
    assert sum(sleep.delays) == 3.0


@pytest.mark.asyncio
async def test_recovers_after_rate_limit():
    backend = FakeBackend(outcomes=[RateLimitedError("slow down")])
    sleep = RecordingSleep()

    result = await _executor(sleep).execute(lambda: backend.edit("AAA", "image/png", "x"))

    assert result == EDITED
    assert len(backend.calls) == 2
    assert sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_fatal_error_is_not_retried():
    backend = FakeBackend(always_raise=EditBackendError("Image editing failed (status=400)"))
    sleep = RecordingSleep()

    with pytest.raises(EditBackendError):
        await _executor(sleep).execute(lambda: backend.edit("AAA", "image/png", "x"))

    assert len(backend.calls) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_rate_limit_recognized_from_message():
    """Errors from other libraries count as rate limiting when they mention 429."""
    backend = FakeBackend(outcomes=[RuntimeError("HTTP 429 returned by upstream")])
    sleep = RecordingSleep()

    result = await _executor(sleep).execute(lambda: backend.edit("AAA", "image/png", "x"))

    assert result == EDITED
    assert sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_backoff_base_scales_delays():
    backend = FakeBackend(always_raise=RateLimitedError("429"))
    sleep = RecordingSleep()

    with pytest.raises(RateLimitedError):
        await _executor(sleep, max_attempts=4, backoff_base=0.5).execute(
            lambda: backend.edit("AAA", "image/png", "x")
        )

    assert sleep.delays == [0.5, 1.0, 2.0]


@pytest.mark.asyncio
async def test_single_attempt_never_sleeps():
    backend = FakeBackend(always_raise=RateLimitedError("429"))
    sleep = RecordingSleep()

    with pytest.raises(RateLimitedError):
        await _executor(sleep, max_attempts=1).execute(
            lambda: backend.edit("AAA", "image/png", "x")
        )

    assert len(backend.calls) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_on_retry_reports_attempts():
    attempts = []
    backend = FakeBackend(always_raise=RateLimitedError("429"))
    executor = RetryingExecutor(sleep=RecordingSleep(), on_retry=attempts.append)

    with pytest.raises(RateLimitedError):
        await executor.execute(lambda: backend.edit("AAA", "image/png", "x"))

    assert [a.attempt for a in attempts] == [0, 1]
    assert [a.delay for a in attempts] == [1.0, 2.0]
    assert all(a.kind == ErrorKind.transient for a in attempts)


def test_rejects_non_positive_attempts():
    with pytest.raises(ValueError):
        RetryingExecutor(max_attempts=0)

import asyncio
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from image_editor.errors import is_rate_limited
from image_editor.models import ErrorKind, RetryAttempt

DEFAULT_MAX_ATTEMPTS = 3


class RetryingExecutor:
    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_retry: Optional[Callable[[RetryAttempt], Any]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.logger = logger
        self.on_retry = on_retry
        self._sleep = sleep

    def _calculate_delay(self, attempt: int) -> float:
        """Exponential backoff: base * 2^attempt, so 1s, 2s, 4s with the default base"""
        return self.backoff_base * (2**attempt)

    async def execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        max_attempts: Optional[int] = None,
    ) -> Any:
        """Run the operation, retrying rate-limited failures with exponential backoff"""
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        for attempt in range(attempts):
            try:
                return await operation()
            except Exception as error:
                if not is_rate_limited(error) or attempt >= attempts - 1:
                    kind = ErrorKind.transient if is_rate_limited(error) else ErrorKind.fatal
                    self.logger.error(
                        f"Giving up after attempt {attempt + 1}/{attempts} ({kind.value}): {error}"
                    )
                    raise

                delay = self._calculate_delay(attempt)
                self.logger.warning(
                    f"Rate limit hit. Retrying in {delay:.2f}s... (Attempt {attempt + 1}/{attempts})"
                )
                if self.on_retry is not None:
                    self.on_retry(
                        RetryAttempt(
                            attempt=attempt,
                            delay=delay,
                            kind=ErrorKind.transient,
                            error=str(error),
                        )
                    )
                await self._sleep(delay)

        # Unreachable: the last attempt either returns or raises
        raise RuntimeError("Retry loop exited without a result")

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from loguru import logger

from image_editor.backend import EditBackend
from image_editor.models import EditedImage, JobEvent, JobId, JobOutput
from image_editor.retry import RetryingExecutor

EDIT_STEP = "call-edit-backend"
SETTLE_STEP = "settle"


class Checkpoint:
    __slots__ = ("output",)

    def __init__(self, output: Any):
        self.output = output


class CheckpointStore:
    """Keeps the output of every step that finished, keyed by job id and step name"""

    def __init__(self):
        self._checkpoints: Dict[Tuple[str, str], Checkpoint] = {}

    def load(self, job_id: JobId, step: str) -> Optional[Checkpoint]:
        return self._checkpoints.get((job_id, step))

    def save(self, job_id: JobId, step: str, output: Any) -> None:
        self._checkpoints[(job_id, step)] = Checkpoint(output)


class StepContext:
    def __init__(
        self,
        job_id: JobId,
        store: CheckpointStore,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.job_id = job_id
        self.store = store
        self.logger = logger
        self._sleep = sleep

    async def run(self, name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run a step once per job; replays reuse the recorded output"""
        checkpoint = self.store.load(self.job_id, name)
        if checkpoint is not None:
            self.logger.debug(f"Job {self.job_id}: step '{name}' already done, reusing output")
            return checkpoint.output

        output = await fn()
        self.store.save(self.job_id, name, output)
        self.logger.debug(f"Job {self.job_id}: step '{name}' checkpointed")
        return output

    async def sleep(self, name: str, seconds: float) -> None:
        await self.run(name, lambda: self._sleep(seconds))


class EditJobRunner:
    """Runs one ``image.process`` event: a single checkpointed edit step, then a settle delay."""

    def __init__(
        self,
        backend: EditBackend,
        executor: Optional[RetryingExecutor] = None,
        store: Optional[CheckpointStore] = None,
        settle_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.backend = backend
        self.executor = executor or RetryingExecutor()
        self.store = store or CheckpointStore()
        self.settle_delay = settle_delay
        self.logger = logger
        self._sleep = sleep

    async def run(self, job_id: JobId, event: JobEvent) -> JobOutput:
        step = StepContext(job_id, self.store, sleep=self._sleep)
        request = event.data

        async def call_backend() -> EditedImage:
            return await self.executor.execute(
                lambda: self.backend.edit(request.image_data, request.mime_type, request.prompt)
            )

        result = await step.run(EDIT_STEP, call_backend)
        await step.sleep(SETTLE_STEP, self.settle_delay)

        self.logger.info(f"Job {job_id}: edit finished ({result.mime_type})")
        return JobOutput(event=event, body=result)

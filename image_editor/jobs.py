import asyncio
import uuid
from typing import Dict, List, Optional, Set

from loguru import logger

from image_editor.backend import EditBackend
from image_editor.errors import (
    DispatchFailedError,
    EditBackendError,
    InvalidRequestError,
    JobNotFoundError,
)
from image_editor.models import (
    ALLOWED_MIME_TYPES,
    DispatchResponse,
    EditorConfig,
    EditRequest,
    JobEvent,
    JobId,
    JobRecord,
    JobStatus,
    RawJobStatus,
    StatusResponse,
)
from image_editor.retry import RetryingExecutor
from image_editor.runner import EditJobRunner

UNKNOWN_FAILURE_MESSAGE = "Unknown job failure."
CRASH_MESSAGE = "Image processing failed unexpectedly. Please try again."

_STATUS_MAP = {
    RawJobStatus.not_started.value: JobStatus.pending,
    RawJobStatus.queued.value: JobStatus.pending,
    RawJobStatus.running.value: JobStatus.processing,
    RawJobStatus.completed.value: JobStatus.completed,
    RawJobStatus.failed.value: JobStatus.failed,
    RawJobStatus.cancelled.value: JobStatus.failed,
}


def map_status(raw_status: str) -> JobStatus:
    """Collapse the platform's raw status vocabulary into the four client statuses"""
    status = _STATUS_MAP.get(raw_status)
    if status is None:
        logger.warning(f"Unrecognized raw job status {raw_status!r}, reporting pending")
        return JobStatus.pending
    return status


def extract_error(record: JobRecord) -> str:
    """Human readable failure message, falling back when the recorded shape is off"""
    error = record.error
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return UNKNOWN_FAILURE_MESSAGE


class JobPlatform:
    """In-process job platform: stores jobs and runs them off the request path.

    A job whose run raises an ``EditBackendError`` fails straight away. Any other
    exception is treated as an infrastructure crash and the whole run is retried
    up to ``job_retries`` more times; finished steps are replayed from their
    checkpoints, not executed again.
    """

    def __init__(self, runner: EditJobRunner, job_retries: int = 2):
        self.runner = runner
        self.job_retries = job_retries
        self.logger = logger
        self._jobs: Dict[str, JobRecord] = {}
        self._tasks: Set[asyncio.Task] = set()

    async def send(self, event: JobEvent) -> List[JobId]:
        job_id = JobId(str(uuid.uuid4()))
        self._jobs[job_id] = JobRecord(id=job_id, event=event)
        task = asyncio.create_task(self._execute(job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.logger.info(f"Queued job {job_id} for event '{event.name}'")
        return [job_id]

    def get(self, job_id: JobId) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    async def _execute(self, job_id: JobId) -> None:
        job = self._jobs[job_id]
        total_runs = self.job_retries + 1

        while True:
            job.attempts += 1
            job.raw_status = RawJobStatus.running.value
            try:
                job.output = await self.runner.run(job_id, job.event)
            except asyncio.CancelledError:
                job.raw_status = RawJobStatus.cancelled.value
                job.error = {"name": "CancelledError", "message": "Job was cancelled."}
                raise
            except EditBackendError as e:
                self._fail(job, e)
                return
            except Exception as e:
                if job.attempts >= total_runs:
                    self._fail(job, e)
                    return
                self.logger.exception(
                    f"Job {job_id} crashed on run {job.attempts}/{total_runs}, retrying"
                )
                continue

            job.raw_status = RawJobStatus.completed.value
            self.logger.info(f"Job {job_id} completed after {job.attempts} run(s)")
            return

    def _fail(self, job: JobRecord, error: Exception) -> None:
        # Only backend errors carry a message meant for the user
        message = str(error) if isinstance(error, EditBackendError) else CRASH_MESSAGE
        job.raw_status = RawJobStatus.failed.value
        job.error = {"name": type(error).__name__, "message": message}
        self.logger.error(f"Job {job.id} failed: {error!r}")

    async def join(self) -> None:
        """Wait for every in-flight job to finish"""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        """Cancel in-flight jobs; any job that never finished is recorded as cancelled"""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

        for job in self._jobs.values():
            if job.raw_status in (RawJobStatus.queued.value, RawJobStatus.running.value):
                job.raw_status = RawJobStatus.cancelled.value
                job.error = {"name": "CancelledError", "message": "Job was cancelled."}


class EditJobService:
    """Dispatch and status queries for image edit jobs"""

    def __init__(self, platform: JobPlatform, config: Optional[EditorConfig] = None):
        self.platform = platform
        self.config = config or EditorConfig()
        self.logger = logger

    @classmethod
    def create(cls, backend: EditBackend, config: Optional[EditorConfig] = None) -> "EditJobService":
        """Wire runner, retrying executor and platform around an edit backend"""
        config = config or EditorConfig()
        executor = RetryingExecutor(
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base_seconds,
        )
        runner = EditJobRunner(backend, executor=executor, settle_delay=config.settle_delay_seconds)
        return cls(JobPlatform(runner, job_retries=config.job_retries), config)

    async def dispatch(self, request: EditRequest) -> DispatchResponse:
        if not request.image_data or not request.prompt or not request.mime_type:
            raise InvalidRequestError("The request data is incomplete.")
        if request.mime_type not in ALLOWED_MIME_TYPES:
            raise InvalidRequestError("Unsupported image type. Use PNG, JPEG or WebP.")

        try:
            ids = await self.platform.send(JobEvent(data=request))
        except Exception as e:
            self.logger.exception(f"Error dispatching image processing job: {e}")
            raise DispatchFailedError(
                "Failed to start image processing. Please try again."
            ) from e

        if not ids or not ids[0]:
            self.logger.error("Job platform returned no job id")
            raise DispatchFailedError("Failed to start image processing. Please try again.")

        return DispatchResponse(job_id=ids[0], estimated_seconds=self.config.estimated_seconds)

    async def get_status(self, job_id: JobId) -> StatusResponse:
        job = self.platform.get(job_id)
        if job is None:
            raise JobNotFoundError("Job not found.")

        status = map_status(job.raw_status)
        if status == JobStatus.completed:
            if job.output is None:
                self.logger.error(f"Job {job_id} completed without output")
                return StatusResponse(status=JobStatus.failed, error=UNKNOWN_FAILURE_MESSAGE)
            return StatusResponse(status=status, result=job.output.body)
        if status == JobStatus.failed:
            return StatusResponse(status=status, error=extract_error(job))
        return StatusResponse(status=status)

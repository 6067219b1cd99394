"""Client-side workflow for a single image edit.

``reduce`` is the pure transition function; ``ImageEditor`` owns the effects
around it: file validation, dispatch, the poll task and the preview file.
"""

import asyncio
import base64
import inspect
import tempfile
import time
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol, Union

from loguru import logger

from image_editor.errors import ImageEditError, InvalidRequestError
from image_editor.models import (
    DispatchResponse,
    EditorConfig,
    EditRequest,
    JobId,
    JobStatus,
    StatusResponse,
)
from image_editor.notifier import Notifier, NullNotifier
from image_editor.validation import FileValidationResult, validate_upload

DISPATCH_FAILED_MESSAGE = "Failed to start image processing. Please try again."
STATUS_FAILED_MESSAGE = "Failed to get the processing status."
UNKNOWN_FAILURE_MESSAGE = "Unknown job failure."
MISSING_INPUT_MESSAGE = "Please upload an image and enter an edit prompt."


class EditorStatus(str, Enum):
    idle = "idle"
    validating = "validating"
    ready = "ready"
    processing = "processing"
    success = "success"
    error = "error"


class TempFilePreview:
    """Local copy of an uploaded image that a view can render from disk"""

    def __init__(self, path: Path):
        self.path = path
        self.released = False

    @classmethod
    def create(cls, data: bytes, content_type: str) -> "TempFilePreview":
        suffix = "." + content_type.split("/")[-1] if "/" in content_type else ""
        with tempfile.NamedTemporaryFile(prefix="preview-", suffix=suffix, delete=False) as tmp:
            tmp.write(data)
        return cls(Path(tmp.name))

    def release(self) -> None:
        if self.released:
            logger.debug(f"Preview {self.path} already released")
            return
        self.released = True
        self.path.unlink(missing_ok=True)


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content_type: str
    data: bytes
    preview: TempFilePreview

    def encode(self) -> str:
        """Base64 body without a data URL prefix"""
        return base64.b64encode(self.data).decode("ascii")


@dataclass(frozen=True)
class EditorState:
    status: EditorStatus = EditorStatus.idle
    uploaded_file: Optional[UploadedFile] = None
    prompt: str = ""
    job_id: Optional[JobId] = None
    processed_image_url: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ValidationStarted:
    pass


@dataclass(frozen=True)
class ValidationSucceeded:
    file: UploadedFile


@dataclass(frozen=True)
class ValidationFailed:
    error: str


@dataclass(frozen=True)
class PromptChanged:
    prompt: str


@dataclass(frozen=True)
class ProcessStarted:
    pass


@dataclass(frozen=True)
class DispatchSucceeded:
    job_id: JobId


@dataclass(frozen=True)
class PollCompleted:
    job_id: JobId
    image_url: str


@dataclass(frozen=True)
class ProcessFailed:
    job_id: Optional[JobId]  # None when the dispatch itself failed
    error: str


@dataclass(frozen=True)
class Reset:
    pass


EditorAction = Union[
    ValidationStarted,
    ValidationSucceeded,
    ValidationFailed,
    PromptChanged,
    ProcessStarted,
    DispatchSucceeded,
    PollCompleted,
    ProcessFailed,
    Reset,
]


def reduce(state: EditorState, action: EditorAction) -> EditorState:
    """Apply one action; pairs outside the transition table return ``state`` unchanged"""
    status = state.status

    if isinstance(action, Reset):
        return EditorState()

    if isinstance(action, ValidationStarted):
        if status == EditorStatus.idle:
            return EditorState(status=EditorStatus.validating)

    elif isinstance(action, ValidationSucceeded):
        if status in (EditorStatus.idle, EditorStatus.validating):
            return replace(
                state,
                status=EditorStatus.ready,
                uploaded_file=action.file,
                job_id=None,
                processed_image_url=None,
                error=None,
            )

    elif isinstance(action, ValidationFailed):
        if status in (EditorStatus.idle, EditorStatus.validating):
            return EditorState(error=action.error)

    elif isinstance(action, PromptChanged):
        if status == EditorStatus.ready:
            return replace(state, prompt=action.prompt)

    elif isinstance(action, ProcessStarted):
        # Error -> Processing is the retry path
        if status in (EditorStatus.ready, EditorStatus.error) and state.uploaded_file is not None:
            return replace(
                state,
                status=EditorStatus.processing,
                job_id=None,
                processed_image_url=None,
                error=None,
            )

    elif isinstance(action, DispatchSucceeded):
        if status == EditorStatus.processing and state.job_id is None:
            return replace(state, job_id=action.job_id)

    elif isinstance(action, PollCompleted):
        if status == EditorStatus.processing and state.job_id == action.job_id:
            return replace(
                state,
                status=EditorStatus.success,
                job_id=None,
                processed_image_url=action.image_url,
            )

    elif isinstance(action, ProcessFailed):
        if status == EditorStatus.processing and state.job_id == action.job_id:
            return replace(state, status=EditorStatus.error, job_id=None, error=action.error)

    return state


class EditGateway(Protocol):
    async def dispatch(self, request: EditRequest) -> DispatchResponse:
        ...

    async def get_status(self, job_id: JobId) -> StatusResponse:
        ...


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class ImageEditor:
    def __init__(
        self,
        gateway: EditGateway,
        config: Optional[EditorConfig] = None,
        notifier: Optional[Notifier] = None,
        validator: Callable[..., Any] = validate_upload,
        preview_factory: Callable[[bytes, str], TempFilePreview] = TempFilePreview.create,
        on_state_change: Optional[Callable[[EditorState], Any]] = None,
    ):
        self.gateway = gateway
        self.config = config or EditorConfig()
        self.notifier = notifier or NullNotifier()
        self.validator = validator
        self.preview_factory = preview_factory
        self.on_state_change = on_state_change
        self.logger = logger
        self.state = EditorState()
        self._poll_task: Optional[asyncio.Task] = None
        self._processing_started: Optional[float] = None
        self._generation = 0  # bumped on every process() and reset()

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None

    def dispatch(self, action: EditorAction) -> EditorState:
        previous = self.state
        self.state = reduce(previous, action)
        if self.state is previous:
            self.logger.debug(f"Ignored {type(action).__name__} in state {previous.status.value}")
            return self.state

        if self.state.status != previous.status:
            self.logger.debug(f"Editor {previous.status.value} -> {self.state.status.value}")
        if self.on_state_change is not None:
            self.on_state_change(self.state)
        return self.state

    async def select_file(
        self, filename: Optional[str], content_type: Optional[str], data: Optional[bytes]
    ) -> EditorState:
        """Discard the current upload, then validate and store a new one"""
        self.reset()
        generation = self._generation
        self.dispatch(ValidationStarted())
        self._notify(
            "file_upload_started",
            {"file_size": len(data or b""), "file_type": content_type},
        )

        result: FileValidationResult = self.validator(filename, content_type, data)
        if inspect.isawaitable(result):
            result = await result

        if generation != self._generation or self.state.status != EditorStatus.validating:
            # Reset or replaced while validating: this upload is no longer wanted
            return self.state

        if not result.ok:
            self.dispatch(ValidationFailed(result.message))
            self._notify(
                "validation_error",
                {
                    "error_type": result.reason.value if result.reason else None,
                    "error_message": result.message,
                    "file_size": len(data or b""),
                    "file_type": content_type,
                },
            )
            return self.state

        preview = self.preview_factory(data, content_type)
        uploaded = UploadedFile(
            filename=result.metadata.file_name,
            content_type=content_type,
            data=data,
            preview=preview,
        )
        self.dispatch(ValidationSucceeded(uploaded))
        self._notify(
            "file_upload_completed",
            {
                "file_size": result.metadata.file_size,
                "file_type": result.metadata.file_type,
                "validation_status": "success",
            },
        )
        return self.state

    def set_prompt(self, prompt: str) -> EditorState:
        return self.dispatch(PromptChanged(prompt))

    async def process(self) -> EditorState:
        """Dispatch the edit job and start polling for its status"""
        uploaded = self.state.uploaded_file
        if uploaded is None or not self.state.prompt.strip():
            raise InvalidRequestError(MISSING_INPUT_MESSAGE)
        if self.state.status not in (EditorStatus.ready, EditorStatus.error):
            self.logger.warning(f"Edit requested while {self.state.status.value}, ignoring")
            return self.state

        self.dispatch(ProcessStarted())
        self._generation += 1
        generation = self._generation
        self._processing_started = time.monotonic()
        self._notify(
            "edit_request_initiated",
            {"prompt_length": len(self.state.prompt), "image_size": len(uploaded.data)},
        )

        request = EditRequest(
            image_data=uploaded.encode(),
            mime_type=uploaded.content_type,
            prompt=self.state.prompt,
        )
        try:
            response = await self.gateway.dispatch(request)
        except Exception as e:
            if generation != self._generation:
                return self.state
            if isinstance(e, ImageEditError):
                message = str(e)
                self.logger.error(f"Dispatch failed: {e}")
            else:
                message = DISPATCH_FAILED_MESSAGE
                self.logger.exception("Unexpected error dispatching edit request")
            self.dispatch(ProcessFailed(job_id=None, error=message))
            self._notify(
                "edit_request_completed",
                {"status": "failed", "error_type": "dispatch_error", "error_message": message},
            )
            return self.state

        if generation != self._generation:
            self.logger.debug(f"Dropping job {response.job_id}: superseded while dispatching")
            return self.state

        self.dispatch(DispatchSucceeded(job_id=response.job_id))
        self.logger.info(
            f"Job {response.job_id} dispatched, estimated {response.estimated_seconds}s"
        )
        self._start_polling()
        return self.state

    def reset(self) -> EditorState:
        """Stop polling, release the preview and return to Idle"""
        self._stop_polling()
        uploaded = self.state.uploaded_file
        if uploaded is not None:
            uploaded.preview.release()
        self._processing_started = None
        self._generation += 1
        return self.dispatch(Reset())

    async def wait_for_result(self) -> EditorState:
        """Wait until the active poll task (if any) has finished"""
        task = self._poll_task
        if task is not None:
            await asyncio.wait({task})
        return self.state

    async def close(self) -> None:
        task = self._poll_task
        self.reset()
        if task is not None:
            await asyncio.wait({task})

    def _start_polling(self) -> None:
        if self.state.status != EditorStatus.processing or self.state.job_id is None:
            return
        if self._poll_task is not None:
            return
        self._poll_task = asyncio.create_task(self._poll(self.state.job_id))

    def _stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and task is not _current_task() and not task.done():
            task.cancel()

    def _is_active(self, job_id: JobId) -> bool:
        return self.state.status == EditorStatus.processing and self.state.job_id == job_id

    async def _poll(self, job_id: JobId) -> None:
        """One status query per interval, each awaited before the next is scheduled"""
        while True:
            await asyncio.sleep(self.config.poll_interval_seconds)
            if not self._is_active(job_id):
                return

            try:
                response = await self.gateway.get_status(job_id)
            except Exception as e:
                if not self._is_active(job_id):
                    return
                message = str(e) if isinstance(e, ImageEditError) else STATUS_FAILED_MESSAGE
                if isinstance(e, ImageEditError):
                    self.logger.error(f"Error polling job {job_id}: {e}")
                else:
                    self.logger.exception(f"Unexpected error polling job {job_id}")
                self._finish_with_error(job_id, message, "polling_error")
                return

            if not self._is_active(job_id):
                self.logger.debug(f"Dropping status of job {job_id}: no longer current")
                return
            self.logger.debug(f"Job {job_id} is {response.status.value}")
            if response.status == JobStatus.completed:
                if response.result is None:
                    self._finish_with_error(job_id, UNKNOWN_FAILURE_MESSAGE, "processing_error")
                    return
                self._stop_polling()
                self.dispatch(PollCompleted(job_id=job_id, image_url=response.result.to_data_url()))
                self._notify(
                    "edit_request_completed",
                    {
                        "status": "success",
                        "processing_duration_ms": self._duration_ms(),
                        "job_id": job_id,
                    },
                )
                return

            if response.status == JobStatus.failed:
                self._finish_with_error(
                    job_id, response.error or UNKNOWN_FAILURE_MESSAGE, "processing_error"
                )
                return

    def _finish_with_error(self, job_id: JobId, message: str, error_type: str) -> None:
        self._stop_polling()
        self.dispatch(ProcessFailed(job_id=job_id, error=message))
        self._notify(
            "edit_request_completed",
            {
                "status": "failed",
                "error_type": error_type,
                "error_message": message,
                "processing_duration_ms": self._duration_ms(),
                "job_id": job_id,
            },
        )

    def _duration_ms(self) -> Optional[int]:
        if self._processing_started is None:
            return None
        return int((time.monotonic() - self._processing_started) * 1000)

    def _notify(self, event: str, properties: Dict[str, Any]) -> None:
        try:
            self.notifier.capture(event, properties)
        except Exception:
            self.logger.exception(f"Notifier failed to capture '{event}'")

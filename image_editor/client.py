import asyncio
from typing import Optional

import aiohttp
from loguru import logger

from image_editor.errors import (
    DispatchFailedError,
    InvalidRequestError,
    JobNotFoundError,
    StatusQueryError,
)
from image_editor.models import DispatchResponse, EditRequest, JobId, StatusResponse

DISPATCH_FAILED_MESSAGE = "Failed to start image processing. Please try again."
STATUS_FAILED_MESSAGE = "Failed to get the processing status."


class ImageEditClient:
    """Talks to the dispatch and status endpoints of an image edit server"""

    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = logger

    async def dispatch(self, request: EditRequest) -> DispatchResponse:
        """Submits an edit request and returns the job id assigned by the server"""
        url = f"{self.base_url}/jobs"

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, json=request.to_wire()) as response:
                    data = await _read_json(response)
                    if response.status == 400:
                        raise InvalidRequestError(_error_message(data, "The request data is incomplete."))
                    response.raise_for_status()
                    return DispatchResponse.model_validate(data)
        except aiohttp.ClientResponseError as e:
            self.logger.error(f"HTTP error {e.status} at {url}: {e.message}")
            raise DispatchFailedError(DISPATCH_FAILED_MESSAGE) from e
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self.logger.error(f"Unexpected error dispatching to {url}: {e!r}")
            raise DispatchFailedError(DISPATCH_FAILED_MESSAGE) from e

    async def get_status(self, job_id: JobId) -> StatusResponse:
        """Fetches the status of a job from the server"""
        url = f"{self.base_url}/jobs/{job_id}"

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url) as response:
                    data = await _read_json(response)
                    if response.status == 404:
                        raise JobNotFoundError(_error_message(data, "Job not found."))
                    response.raise_for_status()
                    return StatusResponse.model_validate(data)
        except aiohttp.ClientResponseError as e:
            self.logger.error(f"HTTP error {e.status} at {url}: {e.message}")
            raise StatusQueryError(STATUS_FAILED_MESSAGE) from e
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self.logger.error(f"Unexpected error polling {url}: {e!r}")
            raise StatusQueryError(STATUS_FAILED_MESSAGE) from e


async def _read_json(response: aiohttp.ClientResponse) -> Optional[dict]:
    try:
        return await response.json(content_type=None)
    except ValueError:
        return None


def _error_message(data: Optional[dict], default: str) -> str:
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    return default

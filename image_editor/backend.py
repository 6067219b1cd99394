import asyncio
import os
from typing import Any, Optional, Protocol

import aiohttp
from loguru import logger
from pydantic import BaseModel

from image_editor.errors import EditBackendError, MissingCredentialError, RateLimitedError
from image_editor.models import EditedImage

API_KEY_ENV = "GEMINI_API_KEY"
PROMPT_SUFFIX = ". Only return the edited image, do not return any text or explanation."
RATE_LIMIT_STATUSES = {"RESOURCE_EXHAUSTED"}


class EditBackend(Protocol):
    async def edit(self, image_data: str, mime_type: str, prompt: str) -> EditedImage:
        ...


class BackendConfig(BaseModel):
    api_key: str
    model: str = "gemini-2.5-flash-image"
    api_url_base: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout: float = 60.0

    @classmethod
    def from_env(cls, **overrides: Any) -> "BackendConfig":
        """Build the config from the environment; the API key is mandatory"""
        api_key = os.getenv(API_KEY_ENV)
        if not api_key:
            logger.error(f"{API_KEY_ENV} is not set in environment variables.")
            raise MissingCredentialError(f"{API_KEY_ENV} is not set in environment variables.")
        return cls(api_key=api_key, **overrides)


class GeminiEditBackend:
    """Single image edit call against the Gemini generateContent REST endpoint.

    No retries happen here; rate limiting is surfaced as ``RateLimitedError`` so
    the caller can decide whether to back off.
    """

    def __init__(self, config: BackendConfig):
        if not config.api_key:
            raise MissingCredentialError(f"{API_KEY_ENV} is not set in environment variables.")
        self.config = config
        self.logger = logger

    @classmethod
    def from_env(cls) -> "GeminiEditBackend":
        return cls(BackendConfig.from_env())

    def _build_body(self, image_data: str, mime_type: str, prompt: str) -> dict:
        return {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": f"{prompt}{PROMPT_SUFFIX}"},
                        {"inline_data": {"mime_type": mime_type, "data": image_data}},
                    ],
                }
            ]
        }

    async def edit(self, image_data: str, mime_type: str, prompt: str) -> EditedImage:
        url = f"{self.config.api_url_base}/models/{self.config.model}:generateContent"
        headers = {"x-goog-api-key": self.config.api_key}
        body = self._build_body(image_data, mime_type, prompt)
        timeout = aiohttp.ClientTimeout(total=self.config.timeout)

        self.logger.info(
            f"Sending edit request to {self.config.model} "
            f"(mime={mime_type}, prompt_len={len(prompt)})"
        )
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=body, headers=headers) as response:
                    try:
                        data = await response.json(content_type=None)
                    except ValueError:
                        data = None
                    if response.status != 200:
                        raise _classify_error(response.status, data)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error(f"HTTP error calling edit backend at {url}: {e!r}")
            raise EditBackendError("Could not reach the image editing service.") from e

        return self._parse_response(data)

    def _parse_response(self, data: Any) -> EditedImage:
        """Pull the first inline image part out of a generateContent response"""
        candidates = data.get("candidates") if isinstance(data, dict) else None
        for candidate in candidates or []:
            parts = (candidate.get("content") or {}).get("parts") or []
            for part in parts:
                inline = part.get("inline_data") or part.get("inlineData")
                if not isinstance(inline, dict):
                    continue
                payload = inline.get("data")
                mime = inline.get("mime_type") or inline.get("mimeType")
                if isinstance(payload, str) and isinstance(mime, str):
                    return EditedImage(image_data=payload, mime_type=mime)

        self.logger.error(f"Invalid edit backend response structure: {_summarize(data)}")
        raise EditBackendError(
            "No valid image was returned by the editing service. The request may be unclear."
        )


def _classify_error(status: int, data: Optional[dict]) -> EditBackendError:
    error = data.get("error") if isinstance(data, dict) else None
    detail = ""
    reason = ""
    if isinstance(error, dict):
        detail = str(error.get("message") or "").strip()
        reason = str(error.get("status") or "").strip().upper()

    logger.error(f"Edit backend returned status {status}: {reason} {detail}".rstrip())
    if status == 429 or reason in RATE_LIMIT_STATUSES:
        return RateLimitedError(f"Edit backend rate limit hit (status={status})")
    return EditBackendError(f"Image editing failed (status={status})")


def _summarize(data: Any) -> str:
    if not isinstance(data, dict):
        return type(data).__name__
    candidates = data.get("candidates") or []
    first = candidates[0] if candidates and isinstance(candidates[0], dict) else {}
    parts = (first.get("content") or {}).get("parts") or []
    kinds = sorted({key for part in parts if isinstance(part, dict) for key in part})
    return f"candidates={len(candidates)} part_keys={kinds}"

"""Exceptions raised across the image edit workflow."""

RATE_LIMIT_SIGNALS = ("429", "rate limit", "too many requests", "resource_exhausted")


class ImageEditError(Exception):
    """Base class for all image edit errors."""


class InvalidRequestError(ImageEditError):
    """Raised when a dispatch request or upload is incomplete or unsupported."""


class DispatchFailedError(ImageEditError):
    """Raised when the job platform did not hand back a job id."""


class JobNotFoundError(ImageEditError):
    """Raised when a job id does not resolve to any known job."""


class EditBackendError(ImageEditError):
    """Raised when the edit backend fails in a way retrying will not fix."""


class RateLimitedError(EditBackendError):
    """Raised when the edit backend asks the caller to slow down."""


class StatusQueryError(ImageEditError):
    """Raised when a status query itself fails (network, protocol)."""


class MissingCredentialError(ImageEditError):
    """Raised at startup when the edit backend credential is not configured."""


def is_rate_limited(error: BaseException) -> bool:
    """Check whether an error carries a rate-limit signal"""
    if isinstance(error, RateLimitedError):
        return True
    text = str(error).lower()
    return any(signal in text for signal in RATE_LIMIT_SIGNALS)

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from image_editor.models import ALLOWED_MIME_TYPES

MAX_FILE_SIZE_MB = 7
MAX_FILE_SIZE_BYTES = MAX_FILE_SIZE_MB * 1024 * 1024


class ValidationFailureReason(str, Enum):
    missing = "missing"
    size = "size"
    type = "type"


class FileMetadata(BaseModel):
    file_name: str
    file_size: int
    file_type: str


class FileValidationResult(BaseModel):
    ok: bool
    message: str
    reason: Optional[ValidationFailureReason] = None
    metadata: Optional[FileMetadata] = None


def validate_upload(
    filename: Optional[str], content_type: Optional[str], data: Optional[bytes]
) -> FileValidationResult:
    """Check an uploaded file against the size and MIME type limits"""
    if not data:
        return FileValidationResult(
            ok=False,
            reason=ValidationFailureReason.missing,
            message="No file was found.",
        )

    if len(data) > MAX_FILE_SIZE_BYTES:
        return FileValidationResult(
            ok=False,
            reason=ValidationFailureReason.size,
            message=f"File size exceeds the allowed {MAX_FILE_SIZE_MB} MB",
        )

    if content_type not in ALLOWED_MIME_TYPES:
        return FileValidationResult(
            ok=False,
            reason=ValidationFailureReason.type,
            message="Unsupported file format. Please use PNG, JPEG or WebP",
        )

    return FileValidationResult(
        ok=True,
        message="File validated successfully",
        metadata=FileMetadata(
            file_name=filename or "upload",
            file_size=len(data),
            file_type=content_type,
        ),
    )

"""
Server-side validation for source images (MIME type and size).
"""
from typing import Any

ALLOWED_IMAGE_MIME = ("image/jpeg", "image/png", "image/webp")
MAX_UPLOAD_BYTES = 10 * 1024 * 1024

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


class UploadValidationError(Exception):
    """Validation failure surfaced to the HTTP caller with a stable code."""

    def __init__(self, code: str, message: str, status: int):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status


def normalize_mime(content_type: str) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def validate_mime(content_type: str) -> str:
    normalized = normalize_mime(content_type)
    if not normalized:
        raise UploadValidationError("UNSUPPORTED_CONTENT_TYPE", "Missing content type", 415)
    if normalized not in ALLOWED_IMAGE_MIME:
        raise UploadValidationError(
            "UNSUPPORTED_CONTENT_TYPE",
            f"Unsupported content type: {normalized}",
            415,
        )
    return normalized


def validate_size(size: Any) -> int:
    if isinstance(size, bool) or not isinstance(size, (int, float)) or size != size or size <= 0:
        raise UploadValidationError("INVALID_PAYLOAD", "Invalid content length", 400)
    if size > MAX_UPLOAD_BYTES:
        raise UploadValidationError(
            "FILE_TOO_LARGE",
            f"File size exceeds {MAX_UPLOAD_BYTES} bytes",
            413,
        )
    return int(size)


def mime_to_extension(content_type: str) -> str:
    return _EXTENSIONS.get(content_type, "bin")

"""
Upload Validator
Pure checks on an upload's declared type, extension and size
"""

from typing import Optional

from ..utils.exceptions import UploadValidationError, ValidationReason

SUPPORTED_EXTENSIONS = frozenset({
    "mp4", "mov", "avi", "mkv", "webm", "flv", "mpeg", "mpg", "3gp", "m4v",
})

# Browsers and CLI clients often send these for any binary file
GENERIC_CONTENT_TYPES = frozenset({"", "application/octet-stream"})


def is_supported_content_type(content_type: Optional[str]) -> bool:
    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    return media_type in GENERIC_CONTENT_TYPES or media_type.startswith("video/")


def validate_upload(
    declared_content_type: Optional[str],
    file_extension: str,
    byte_size: int,
    max_bytes: int
) -> None:
    """
    Validate an upload before processing.

    Args:
        declared_content_type: Content-Type sent with the multipart field
        file_extension: Extension of the client filename, without the dot
        byte_size: Size in bytes as known so far
        max_bytes: Configured upload limit

    Raises:
        UploadValidationError: with reason unsupported_format, empty_file or too_large
    """
    extension = (file_extension or "").lower().lstrip(".")
    if extension not in SUPPORTED_EXTENSIONS:
        raise UploadValidationError(
            ValidationReason.UNSUPPORTED_FORMAT,
            f"Unsupported file extension: {extension or '(none)'}",
            extension=extension,
            supported=sorted(SUPPORTED_EXTENSIONS),
        )

    if not is_supported_content_type(declared_content_type):
        raise UploadValidationError(
            ValidationReason.UNSUPPORTED_FORMAT,
            f"Unsupported content type: {declared_content_type}",
            content_type=declared_content_type,
        )

    if byte_size <= 0:
        raise UploadValidationError(ValidationReason.EMPTY_FILE, "Uploaded file is empty")

    if byte_size > max_bytes:
        raise UploadValidationError(
            ValidationReason.TOO_LARGE,
            f"File is {byte_size} bytes; the limit is {max_bytes} bytes",
            size=byte_size,
            max_bytes=max_bytes,
        )

"""Validation for images attached to chat messages.

Checks size, declared MIME type and the file signature (magic bytes) so a
renamed file cannot pass as an image.
"""

import base64
import os

import structlog

from coach_backend.api.schemas import ImageAttachment
from coach_backend.core.errors import FileUploadError

logger = structlog.get_logger(__name__)

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp")


def max_image_bytes() -> int:
    return int(os.environ.get("MAX_IMAGE_MB", "20")) * 1024 * 1024


def has_valid_signature(data: bytes, mime_type: str) -> bool:
    """Check the leading bytes against the signature of the declared type."""
    if len(data) < 4:
        return False

    header = data[:4].hex().upper()
    mime_type = mime_type.lower()

    if mime_type in ("image/jpeg", "image/jpg"):
        return header.startswith("FFD8FF")
    if mime_type == "image/png":
        return header == "89504E47"
    if mime_type == "image/gif":
        return header.startswith("47494638")  # GIF87a or GIF89a
    if mime_type == "image/webp":
        if len(data) < 12:
            return False
        return data[:4] == b"RIFF" and data[8:12] == b"WEBP"
    return False


def validate_image(data: bytes, mime_type: str | None, filename: str | None = None) -> ImageAttachment:
    """Validate an uploaded image and wrap it as an ImageAttachment.

    Raises:
        FileUploadError: Empty, too large, unsupported type or bad signature.
    """
    mime_type = (mime_type or "").lower()
    context = {"file_name": filename, "mime_type": mime_type, "size": len(data)}

    if not data:
        raise FileUploadError("The attached image is empty", context=context)

    limit = max_image_bytes()
    if len(data) > limit:
        raise FileUploadError(
            f"Image size {round(len(data) / 1024 / 1024)}MB exceeds the {limit // (1024 * 1024)}MB limit",
            context=context,
        )

    if mime_type not in ALLOWED_IMAGE_TYPES:
        raise FileUploadError(
            f"Image type {mime_type or 'unknown'} is not supported. "
            f"Allowed types: {', '.join(ALLOWED_IMAGE_TYPES)}",
            context=context,
        )

    if not has_valid_signature(data, mime_type):
        logger.warning("image.signature_mismatch", **context)
        raise FileUploadError("The attached file is not a valid image", context=context)

    return ImageAttachment(data=data, mime_type=mime_type, filename=filename)


def to_base64(image: ImageAttachment) -> str:
    return base64.b64encode(image.data).decode("ascii")


def to_data_url(image_base64: str, mime_type: str) -> str:
    return f"data:{mime_type};base64,{image_base64}"

"""Checks shared by the cache write path and description extraction."""

MAX_IMAGE_BYTES = 5 * 1024 * 1024

ALLOWED_MIME_TYPES = (
    'image/jpeg',
    'image/jpg',
    'image/png',
    'image/gif',
    'image/webp',
    'image/svg+xml',
)


class ImageValidationError(ValueError):
    """Raised before any persistence or caching when an image is rejected."""


def estimated_size(base64_data):
    # base64 is ~4/3 of the binary size; no decoding
    return len(base64_data) * 3 / 4


def validate_image(base64_data, mime_type):
    if mime_type not in ALLOWED_MIME_TYPES:
        raise ImageValidationError(
            f"Invalid image type '{mime_type}'. Allowed types: {', '.join(ALLOWED_MIME_TYPES)}"
        )
    if not base64_data or not isinstance(base64_data, str):
        raise ImageValidationError('Invalid base64 data format')
    if estimated_size(base64_data) > MAX_IMAGE_BYTES:
        raise ImageValidationError(f'Image too large. Maximum size: {MAX_IMAGE_BYTES // (1024 * 1024)}MB')

"""
Media Type Resolution

Maps declared MIME types and archive entry file names onto pipeline media types.
"""

from pathlib import PurePosixPath

from .models import MediaType

SUPPORTED_IMAGE_TYPES = [
    "image/png", "image/jpg", "image/jpeg", "image/gif", "image/bmp", "image/tiff",
]
SUPPORTED_DOCUMENT_TYPES = [
    "application/pdf", "text/plain", "text/csv",
]
SUPPORTED_ARCHIVE_TYPES = [
    "application/zip", "application/x-zip-compressed",
]

_MIME_TO_MEDIA_TYPE = {
    **{mime: MediaType.IMAGE for mime in SUPPORTED_IMAGE_TYPES},
    "application/pdf": MediaType.PDF,
    "text/plain": MediaType.PLAIN_TEXT,
    "text/csv": MediaType.PLAIN_TEXT,
    **{mime: MediaType.ARCHIVE for mime in SUPPORTED_ARCHIVE_TYPES},
}

_EXTENSION_TO_MIME = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".sms": "text/plain",
    ".csv": "text/csv",
    ".zip": "application/zip",
}


def resolve_media_type(content_type: str | None) -> MediaType | None:
    """Resolve a declared MIME type, ignoring parameters such as charset.

    Returns:
        The pipeline media type, or None when unsupported
    """
    if not content_type:
        return None

    mime = content_type.split(";", 1)[0].strip().lower()
    return _MIME_TO_MEDIA_TYPE.get(mime)


def guess_content_type(file_name: str) -> str | None:
    """Guess the MIME type of an archive entry from its extension."""
    suffix = PurePosixPath(file_name).suffix.lower()
    return _EXTENSION_TO_MIME.get(suffix)


def is_supported(content_type: str | None) -> bool:
    return resolve_media_type(content_type) is not None


def supported_content_types() -> list[str]:
    """All MIME types accepted at the upload boundary."""
    return SUPPORTED_IMAGE_TYPES + SUPPORTED_DOCUMENT_TYPES + SUPPORTED_ARCHIVE_TYPES

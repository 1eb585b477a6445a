"""Content-type and file-extension mapping for proxied images."""

from __future__ import annotations

DEFAULT_CONTENT_TYPE = "application/octet-stream"
DEFAULT_EXTENSION = "jpg"

CONTENT_TYPES: dict[str, str] = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "bmp": "image/bmp",
    "tiff": "image/tiff",
    "ico": "image/x-icon",
}

EXTENSIONS: dict[str, str] = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
    "image/bmp": "bmp",
    "image/tiff": "tiff",
    "image/x-icon": "ico",
}


def content_type_for_name(name: str) -> str:
    """Guess a content type from the extension of a file name."""
    if "." not in name:
        return DEFAULT_CONTENT_TYPE
    extension = name.rsplit(".", 1)[1].lower()
    return CONTENT_TYPES.get(extension, DEFAULT_CONTENT_TYPE)


def resolve_content_type(mime_type: str | None, name: str) -> str:
    """Use the backend MIME type for images, the file name for anything else."""
    if mime_type and mime_type.startswith("image/"):
        return mime_type
    return content_type_for_name(name)


def extension_for(mime_type: str | None) -> str:
    if mime_type is None:
        return DEFAULT_EXTENSION
    return EXTENSIONS.get(mime_type, DEFAULT_EXTENSION)


def strip_extension(identifier: str) -> str:
    """Drop an ``.ext`` suffix; identifiers never contain a dot themselves."""
    return identifier.split(".", 1)[0]

from __future__ import annotations

import re
import uuid
from typing import BinaryIO, Dict, FrozenSet

from .services.errors import ValidationFailed


ALLOWED_EXTENSIONS: FrozenSet[str] = frozenset({"pdf", "doc", "docx", "jpg", "jpeg", "png", "gif"})

DANGEROUS_EXTENSIONS: FrozenSet[str] = frozenset(
    {"exe", "bat", "cmd", "com", "pif", "scr", "vbs", "js", "jar", "sh", "ps1", "msi", "dll"}
)

CONTENT_TYPES: Dict[str, str] = {
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
}

DEFAULT_CONTENT_TYPE = "application/octet-stream"

READ_CHUNK_SIZE = 64 * 1024

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def file_extension(filename: str) -> str:
    if "." not in filename:
        return ""
    return filename.rsplit(".", 1)[1].lower()


def _too_large(max_size: int, size: int) -> ValidationFailed:
    return ValidationFailed(
        f"File size exceeds the maximum allowed size of {max_size // (1024 * 1024)}MB",
        details={"maxSize": max_size, "size": size},
    )


def read_limited(stream: BinaryIO, max_size: int, chunk_size: int = READ_CHUNK_SIZE) -> bytes:
    """Read ``stream`` in chunks, failing as soon as it grows past ``max_size``."""
    buffer = bytearray()
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            return bytes(buffer)
        buffer.extend(chunk)
        if len(buffer) > max_size:
            raise _too_large(max_size, len(buffer))


def validate_upload(filename: str | None, size: int, max_size: int) -> str:
    """Check an upload and return its lowercased extension."""
    if size <= 0:
        raise ValidationFailed("File cannot be empty")
    if size > max_size:
        raise _too_large(max_size, size)
    name = (filename or "").strip()
    if not name:
        raise ValidationFailed("File name is required")
    if ".." in name or "/" in name or "\\" in name:
        raise ValidationFailed("File name contains invalid path characters")

    extension = file_extension(name)
    if not extension:
        raise ValidationFailed("File must have an extension")
    if extension in DANGEROUS_EXTENSIONS:
        raise ValidationFailed(f"File type '.{extension}' is not allowed for security reasons")
    if extension not in ALLOWED_EXTENSIONS:
        raise ValidationFailed(
            f"File type '.{extension}' is not supported",
            details={"allowed": sorted(ALLOWED_EXTENSIONS)},
        )
    return extension


def unique_filename(original: str) -> str:
    extension = file_extension(original)
    base = original.rsplit(".", 1)[0] if extension else original
    safe_base = _UNSAFE_CHARS.sub("_", base) or "file"
    suffix = uuid.uuid4().hex[:8]
    if extension:
        return f"{safe_base}_{suffix}.{extension}"
    return f"{safe_base}_{suffix}"


def content_type_for(filename: str) -> str:
    return CONTENT_TYPES.get(file_extension(filename), DEFAULT_CONTENT_TYPE)

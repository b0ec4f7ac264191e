# events/uploads.py
import base64
import binascii
import mimetypes
import os
from dataclasses import dataclass

from django.conf import settings

from .errors import FileTooLarge, UnsupportedFileType, ValidationFailed

DEFAULT_MAX_UPLOAD_SIZE = 5 * 1024 * 1024


@dataclass(frozen=True)
class UploadInfo:
    name: str
    size: int
    type: str

    @classmethod
    def from_payload(cls, payload: dict) -> "UploadInfo":
        return cls(
            name=str(payload.get("name") or ""),
            size=int(payload.get("size") or 0),
            type=str(payload.get("type") or ""),
        )


def max_upload_size() -> int:
    return getattr(settings, "REGISTRATION_MAX_UPLOAD_SIZE", DEFAULT_MAX_UPLOAD_SIZE)


def format_size(num_bytes: int) -> str:
    if num_bytes >= 1024 * 1024:
        return f"{num_bytes / (1024 * 1024):.1f}MB"
    return f"{num_bytes / 1024:.0f}KB"


def parse_accepted_types(accepted_types) -> list:
    if not accepted_types:
        return []
    return [t.strip().lower() for t in str(accepted_types).split(",") if t.strip()]


def _matches(pattern: str, upload: UploadInfo) -> bool:
    if pattern.startswith("."):
        return upload.name.lower().endswith(pattern)
    if pattern.endswith("/*"):
        return upload.type.lower().startswith(pattern[:-1])
    return upload.type.lower() == pattern


def validate_file(upload: UploadInfo, max_file_size=None, accepted_types=None) -> UploadInfo:
    """
    Check an upload against the site ceiling and the field's own limits.
    Raises FileTooLarge or UnsupportedFileType.
    """
    ceiling = max_upload_size()
    if upload.size > ceiling:
        raise FileTooLarge(f"File exceeds maximum size of {format_size(ceiling)}")
    if max_file_size and upload.size > max_file_size:
        raise FileTooLarge(f"File exceeds maximum size of {format_size(max_file_size)}")

    patterns = parse_accepted_types(accepted_types)
    if patterns and not any(_matches(p, upload) for p in patterns):
        raise UnsupportedFileType(f"File type {upload.type or 'unknown'} is not allowed")
    return upload


def validate_field_file(field, payload: dict) -> dict:
    """validate_file for one form field; the error names the field it belongs to."""
    try:
        validate_file(UploadInfo.from_payload(payload), field.max_file_size, field.accepted_types)
    except (FileTooLarge, UnsupportedFileType) as exc:
        exc.errors = {field.key: [exc.message]}
        raise
    return payload


def read_upload(uploaded_file) -> dict:
    """Turn a Django UploadedFile into the payload kept in wizard state."""
    content = uploaded_file.read()
    return {
        "name": os.path.basename(uploaded_file.name),
        "size": len(content),
        "type": uploaded_file.content_type or "",
        "data": base64.b64encode(content).decode("ascii"),
    }


def normalize_file_payload(raw) -> dict:
    """
    Rebuild a file payload from what was actually sent.

    Size is measured from the decoded content and the type is guessed from
    the file name, so metadata reported by the browser is never trusted.
    """
    if not isinstance(raw, dict) or not raw.get("name"):
        raise ValidationFailed("Invalid file upload.")
    name = os.path.basename(str(raw["name"]))
    data = raw.get("data") or ""
    try:
        content = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError, TypeError):
        raise ValidationFailed("Invalid file upload.")
    if not content:
        raise ValidationFailed(f"Uploaded file {name} is empty.")
    guessed, _ = mimetypes.guess_type(name)
    return {
        "name": name,
        "size": len(content),
        "type": guessed or "application/octet-stream",
        "data": data,
    }


def decode_payload(payload: dict) -> bytes:
    return base64.b64decode(payload["data"])

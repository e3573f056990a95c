"""Incoming image handling: data-URL decoding, MIME sniffing and size checks."""

from __future__ import annotations

import base64
import binascii
import io
import re
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from eventlens.core.errors import ValidationError
from eventlens.core.settings import settings

_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(;[\w=-]+)*;base64,(?P<data>.*)$", re.S)

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/heic": "heic",
}


@dataclass
class Upload:
    data: bytes
    content_type: str
    filename: Optional[str] = None

    @property
    def extension(self) -> str:
        return extension_for(self.content_type)


def extension_for(content_type: str) -> str:
    return _EXTENSIONS.get((content_type or "").lower(), "bin")


def sniff_mime(data: bytes, fallback_content_type: Optional[str] = None) -> str:
    """Image MIME type detected by Pillow, else the declared type."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            detected = Image.MIME.get(img.format or "")
    except (UnidentifiedImageError, OSError):
        detected = None
    return detected or fallback_content_type or "application/octet-stream"


def is_allowed_mime(
    data: bytes,
    allowed_prefixes: Tuple[str, ...] = ("image/",),
    fallback_content_type: Optional[str] = None,
) -> tuple[bool, str]:
    """Return (allowed, mime) using sniffed MIME with fallback."""
    mime = sniff_mime(data, fallback_content_type)
    if not allowed_prefixes:
        return True, mime
    return any(mime.startswith(p) for p in allowed_prefixes), mime


def decode_data_url(raw: Any, field: str = "file") -> Optional[Upload]:
    """Decode a ``data:<mime>;base64,...`` string as sent by the web client."""
    if raw in (None, ""):
        return None
    if not isinstance(raw, str):
        raise ValidationError(f"{field} must be a base64 data URL", violations=[field])
    match = _DATA_URL.match(raw.strip())
    if not match:
        raise ValidationError(f"{field} must be a base64 data URL", violations=[field])
    try:
        data = base64.b64decode(match.group("data"), validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"{field} is not valid base64", violations=[field]) from e
    return Upload(data=data, content_type=match.group("mime") or "application/octet-stream")


def check_upload(upload: Upload, field: str = "file") -> Upload:
    """Reject empty, oversized or non-image uploads; normalise the content type."""
    if not upload.data:
        raise ValidationError(f"{field} is empty", violations=[field])
    max_bytes = int(getattr(settings, "MAX_UPLOAD_BYTES", 0) or 0)
    if max_bytes and len(upload.data) > max_bytes:
        raise ValidationError(
            f"{field} is too large", violations=[field], size=len(upload.data), maxBytes=max_bytes
        )
    allowed, mime = is_allowed_mime(
        upload.data,
        allowed_prefixes=tuple(settings.ALLOWED_UPLOAD_MIME_PREFIXES),
        fallback_content_type=upload.content_type,
    )
    if not allowed:
        raise ValidationError(f"{field} must be an image", violations=[field], contentType=mime)
    upload.content_type = mime
    return upload

"""Image reference decoding for captured cards.

An image reference is whatever the capture step stored: a data URL, a
``file://`` URI, a filesystem path, or bare base64.
"""

from __future__ import annotations

import base64
import binascii
import io
import os
from typing import Optional
from urllib.parse import unquote, urlparse

from PIL import Image, UnidentifiedImageError

from .errors import InvalidImage

# Pillow raises any of these for bytes it cannot safely open; a decompression
# bomb is a header declaring more pixels than Image.MAX_IMAGE_PIXELS allows.
_UNREADABLE = (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError)

_PIL_FORMAT_TO_MIME = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}


def _b64decode(payload: str, *, record_id: Optional[str]) -> bytes:
    cleaned = "".join(payload.split())
    try:
        return base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidImage(f"base64 payload does not decode: {exc}", record_id) from exc


def _read_file(path: str, *, record_id: Optional[str]) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as exc:
        raise InvalidImage(f"cannot read image file {path}: {exc}", record_id) from exc


def _raw_bytes(image_ref: str, *, record_id: Optional[str]) -> bytes:
    ref = image_ref.strip()
    if ref.startswith("data:"):
        # Same split the capture front end used: payload is everything after the first comma.
        _, sep, payload = ref.partition(",")
        if not sep or not payload.strip():
            raise InvalidImage("data URL has no payload", record_id)
        return _b64decode(payload, record_id=record_id)
    if ref.startswith("file://"):
        return _read_file(unquote(urlparse(ref).path), record_id=record_id)
    expanded = os.path.expanduser(ref)
    if os.path.isfile(expanded):
        return _read_file(expanded, record_id=record_id)
    try:
        return _b64decode(ref, record_id=record_id)
    except InvalidImage:
        raise InvalidImage("neither an existing file nor base64 data", record_id) from None


def sniff_mime(data: bytes) -> str:
    """Return the MIME type Pillow detects for `data`."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = (img.format or "").upper()
    except _UNREADABLE as exc:
        raise InvalidImage(f"unrecognized image data: {exc}") from exc
    return _PIL_FORMAT_TO_MIME.get(fmt, "application/octet-stream")


def decode_image_ref(image_ref: Optional[str], *, record_id: Optional[str] = None, verify: bool = True) -> bytes:
    """Resolve an image reference to raw bytes or raise InvalidImage.

    Zero decoded bytes always count as invalid. With `verify` the bytes must
    also be an image Pillow can identify.
    """
    if not image_ref or not image_ref.strip():
        raise InvalidImage("empty image reference", record_id)
    data = _raw_bytes(image_ref, record_id=record_id)
    if not data:
        raise InvalidImage("image decodes to zero bytes", record_id)
    if verify:
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.verify()
        except _UNREADABLE as exc:
            raise InvalidImage(f"unrecognized image data: {exc}", record_id) from exc
    return data


def to_data_url(data: bytes, mime: Optional[str] = None) -> str:
    mime = mime or sniff_mime(data)
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"

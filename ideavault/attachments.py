import base64
import binascii
import io
import logging
import math
import mimetypes
import os
import re
from pathlib import Path
from urllib.parse import unquote_to_bytes

from PIL import Image, UnidentifiedImageError

from .errors import ValidationError
from .utils import normalize_text

logger = logging.getLogger("IdeaVault")

# Image types Pillow cannot rasterize; stored as-is without dimensions.
UNPROBED_IMAGE_TYPES = {"image/svg+xml"}

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[^;,]*)(?P<params>(?:;[^;,]*)*),(?P<data>.*)$", re.DOTALL)


def decode_data_url(url):
    """Return (mime_type, bytes) for a ``data:`` URL."""
    match = _DATA_URL_RE.match(url or "")
    if not match:
        raise ValidationError("malformed data URL")
    mime_type = match.group("mime") or "text/plain"
    data = match.group("data")
    if ";base64" in match.group("params"):
        try:
            return mime_type, base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValidationError(f"invalid base64 payload: {exc}") from exc
    return mime_type, unquote_to_bytes(data)


def to_data_url(file):
    data = file["content"]
    if isinstance(data, str):
        data = data.encode("utf-8")
    b64 = base64.b64encode(data).decode("ascii")
    return f"data:{file.get('mime_type') or 'application/octet-stream'};base64,{b64}"


def _extension(name, fallback, default):
    if "." in name:
        ext = name.rsplit(".", 1)[-1].strip().lower()
        if ext:
            return ext
    return normalize_text(fallback).lower() or default


# What Pillow raises for unreadable, truncated or oversized image data.
IMAGE_DECODE_ERRORS = (
    UnidentifiedImageError,
    Image.DecompressionBombError,
    OSError,
    SyntaxError,
    ValueError,
)


def read_image_size(data):
    """Return (width, height); the pixel data is decoded so truncated files fail here."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            size = img.size
            img.load()
            return size
    except Image.DecompressionBombError as exc:
        raise ValidationError(f"image is too large: {exc}") from exc
    except IMAGE_DECODE_ERRORS as exc:
        raise ValidationError("attachment is not a readable image") from exc


def normalize_attachment(payload):
    """Validate a file payload and fill in the derived fields.

    ``payload`` needs ``name`` and ``content``. ``content`` may be bytes, text,
    or a ``data:`` URL (what a browser FileReader hands over for images).
    ``mime_type`` is taken from the payload, then the data URL, then guessed
    from the name, falling back to ``text/plain``. Images keep raw bytes and get
    their pixel size read; anything else is stored as UTF-8 text.
    """
    if not isinstance(payload, dict):
        raise ValidationError("attachment must be an object")

    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValidationError("attachment name is required")
    content = payload.get("content")
    if content is None:
        raise ValidationError("attachment content is required")

    mime_type = normalize_text(payload.get("mime_type") or payload.get("type"))
    if isinstance(content, str) and content.startswith("data:"):
        url_mime, content = decode_data_url(content)
        mime_type = mime_type or url_mime
    if not mime_type:
        mime_type = mimetypes.guess_type(name)[0] or "text/plain"

    is_image = mime_type.startswith("image/")
    attachment = {
        "name": name,
        "mime_type": mime_type,
        "extension": _extension(name, payload.get("extension"), "img" if is_image else "txt"),
        "is_image": is_image,
        "width": None,
        "height": None,
    }

    if is_image:
        if isinstance(content, str):
            raise ValidationError("image content must be bytes or a data URL")
        data = bytes(content)
        if mime_type not in UNPROBED_IMAGE_TYPES:
            attachment["width"], attachment["height"] = read_image_size(data)
        attachment["content"] = data
        attachment["size_bytes"] = len(data)
        return attachment

    if isinstance(content, (bytes, bytearray)):
        try:
            text = bytes(content).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValidationError("text attachment must be UTF-8") from exc
    else:
        text = str(content)
    attachment["content"] = text
    attachment["size_bytes"] = len(text.encode("utf-8"))
    return attachment


def merge_attachment(existing, changes):
    """Apply a partial edit (rename and/or new content) to a stored attachment."""
    if not isinstance(changes, dict):
        raise ValidationError("attachment must be an object")
    payload = {
        "name": existing["name"],
        "content": existing["content"],
        "extension": existing.get("extension"),
    }
    # Rename alone keeps the type; new content without a type is re-detected.
    if "content" not in changes:
        payload["mime_type"] = existing.get("mime_type")
    payload.update({k: v for k, v in changes.items() if v is not None})
    return normalize_attachment(payload)


def load_attachment(path):
    path = Path(path)
    if not path.is_file():
        raise ValidationError(f"no such file: {path}")
    data = path.read_bytes()
    mime_type = mimetypes.guess_type(path.name)[0]
    return normalize_attachment({"name": path.name, "mime_type": mime_type, "content": data})


def save_attachment(file, directory):
    """Write an attachment to ``directory`` under its own (basename-only) name."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / (os.path.basename(file["name"]) or "attachment")
    data = file["content"]
    if isinstance(data, str):
        target.write_text(data, encoding="utf-8")
    else:
        target.write_bytes(data)
    logger.debug("attachment written to %s", target)
    return target


def make_thumbnail_png(image_bytes, target_width=256):
    with Image.open(io.BytesIO(image_bytes)) as img:
        img.load()
        if img.mode not in ("RGB", "RGBA"):
            img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
        w, h = img.size
        if w <= 0 or h <= 0:
            raise ValueError("invalid image size")

        if w > target_width:
            new_h = max(1, int(round(h * (target_width / float(w)))))
            img = img.resize((target_width, new_h), Image.Resampling.LANCZOS)

        out = io.BytesIO()
        img.save(out, format="PNG", optimize=True)
        return out.getvalue(), img.size[0], img.size[1]


def format_file_size(size_bytes):
    if not size_bytes:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    i = min(int(math.floor(math.log(size_bytes, 1024))), len(units) - 1)
    value = round(size_bytes / (1024 ** i), 2)
    return f"{value:g} {units[i]}"

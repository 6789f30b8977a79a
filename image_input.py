"""
Image input normalization.

Uploaded images reach the service in several shapes: multipart files,
bare base64 strings, data URLs, JSON objects wrapping any of those, and
remote URLs. Everything is reduced to a single `NormalizedImage`
(bytes + MIME type + filename) before it goes upstream or to storage.

Dynamic values are first classified into one of the input variants
(`BytesInput`, `Base64Input`, `RemoteInput`, `WrappedInput`), and each
variant has its own normalization function.
"""
import asyncio
import base64
import binascii
import json
import logging
import re
from io import BytesIO
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union
from urllib.parse import unquote, urlparse

import requests
from PIL import Image, UnidentifiedImageError
from starlette.datastructures import UploadFile

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "image/jpeg"
DEFAULT_FILENAME = "image"

EXTENSION_TO_MIME: Dict[str, str] = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "heic": "image/heic",
    "heif": "image/heif",
    "avif": "image/avif",
    "bmp": "image/bmp",
    "svg": "image/svg+xml",
    "tif": "image/tiff",
    "tiff": "image/tiff",
}

MIME_TO_EXTENSION: Dict[str, str] = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/pjpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/heic": "heic",
    "image/heif": "heif",
    "image/avif": "avif",
    "image/bmp": "bmp",
    "image/x-ms-bmp": "bmp",
    "image/svg+xml": "svg",
    "image/tiff": "tiff",
}

DATA_URL_RE = re.compile(r"^data:([^;,]*)(?:;[^,]*)?,(.*)$", re.IGNORECASE | re.DOTALL)
_NON_BASE64_RE = re.compile(r"[^A-Za-z0-9+/]")


class ImageInputError(ValueError):
    """Raised when an image input cannot be turned into a NormalizedImage."""


class RemoteImageError(ImageInputError):
    """Raised when an image referenced by URL cannot be fetched."""


@dataclass(frozen=True)
class NormalizedImage:
    data: bytes
    mime_type: str = DEFAULT_MIME_TYPE
    filename: str = DEFAULT_FILENAME

    @property
    def is_image(self) -> bool:
        return self.mime_type.lower().startswith("image/")

    @property
    def size(self) -> int:
        return len(self.data)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def dimensions(self) -> Optional[Tuple[int, int]]:
        """Pixel size read from the image header, or None if Pillow cannot identify it."""
        try:
            with Image.open(BytesIO(self.data)) as img:
                return img.size
        except (UnidentifiedImageError, OSError) as e:
            logger.debug(f"Could not read dimensions of {self.filename}: {e}")
            return None

    def describe(self) -> str:
        dims = self.dimensions()
        size_text = f"{dims[0]}x{dims[1]}, " if dims else ""
        return f"{self.filename} ({self.mime_type}, {size_text}{self.size} bytes)"


# ----------------- Input variants -----------------

@dataclass(frozen=True)
class BytesInput:
    data: bytes
    filename: Optional[str] = None
    content_type: Optional[str] = None


@dataclass(frozen=True)
class Base64Input:
    content: str


@dataclass(frozen=True)
class RemoteInput:
    url: str


@dataclass(frozen=True)
class WrappedInput:
    payload: Mapping[str, Any]


ImageInput = Union[BytesInput, Base64Input, RemoteInput, WrappedInput]


# ----------------- Extension / MIME helpers -----------------

def extension_from_filename(filename: Optional[str]) -> Optional[str]:
    """Return the lowercased text after the last dot, or None when there is none."""
    if not filename or "." not in filename:
        return None
    extension = filename.rsplit(".", 1)[1]
    if not extension:
        return None
    return extension.lower()


def guess_mime_type(filename: Optional[str]) -> Optional[str]:
    extension = extension_from_filename(filename)
    if extension is None:
        return None
    return EXTENSION_TO_MIME.get(extension)


def extension_for_mime(mime_type: Optional[str]) -> Optional[str]:
    if not mime_type:
        return None
    return MIME_TO_EXTENSION.get(_bare_mime(mime_type))


def _bare_mime(value: str) -> str:
    # "image/PNG; charset=binary" -> "image/png"
    return value.split(";", 1)[0].strip().lower()


def _header_value(headers: Any, name: str) -> Optional[str]:
    if not isinstance(headers, Mapping):
        return None
    wanted = name.lower()
    for key, value in headers.items():
        if isinstance(key, str) and key.lower() == wanted and isinstance(value, str) and value.strip():
            return value
    return None


def parse_data_url(text: str) -> Tuple[Optional[str], str]:
    """
    Split a data URL into (image MIME hint, payload).

    The MIME hint is only returned for `image/*` types. Strings that are not
    data URLs come back unchanged with no hint.
    """
    match = DATA_URL_RE.match(text.strip())
    if not match:
        return None, text
    mime_type = _bare_mime(match.group(1))
    hint = mime_type if mime_type.startswith("image/") else None
    return hint, match.group(2)


def decode_base64(payload: str) -> bytes:
    """Decode base64 leniently: whitespace, URL-safe characters and missing padding are accepted."""
    cleaned = payload.strip().replace("-", "+").replace("_", "/")
    cleaned = _NON_BASE64_RE.sub("", cleaned.split("=", 1)[0])
    if len(cleaned) % 4 == 1:
        raise ImageInputError("Invalid base64 image data")
    cleaned += "=" * (-len(cleaned) % 4)
    try:
        return base64.b64decode(cleaned)
    except (binascii.Error, ValueError) as e:
        raise ImageInputError(f"Invalid base64 image data: {e}")


# ----------------- Classification -----------------

def classify_image_input(value: Any) -> ImageInput:
    """Map a dynamically-typed value onto one of the image input variants."""
    if isinstance(value, (BytesInput, Base64Input, RemoteInput, WrappedInput)):
        return value
    if value is None:
        raise ImageInputError("No image input provided")
    if isinstance(value, str):
        return Base64Input(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return BytesInput(bytes(value))
    if isinstance(value, Mapping):
        return WrappedInput(value)
    raise ImageInputError("Unsupported image input format")


# ----------------- Normalization -----------------

def normalize_image_input(value: Any) -> NormalizedImage:
    """
    Normalize any locally-available image input.

    Remote inputs need network I/O and must go through `resolve_image_input`.
    """
    variant = classify_image_input(value)
    if isinstance(variant, BytesInput):
        return normalize_bytes(variant)
    if isinstance(variant, Base64Input):
        return normalize_base64(variant)
    if isinstance(variant, WrappedInput):
        return normalize_wrapped(variant)
    raise ImageInputError("Remote image inputs must be fetched before normalization")


async def resolve_image_input(value: Any, timeout: float = 30.0) -> NormalizedImage:
    """Normalize any image input, fetching remote ones and reading uploads."""
    if isinstance(value, UploadFile):
        return await normalize_upload(value)
    variant = classify_image_input(value)
    if isinstance(variant, RemoteInput):
        return await fetch_remote_image(variant.url, timeout=timeout)
    return normalize_image_input(variant)


def normalize_bytes(source: BytesInput) -> NormalizedImage:
    data = bytes(source.data)
    if not data:
        raise ImageInputError("Image input is empty")
    filename = source.filename or DEFAULT_FILENAME
    mime_type = source.content_type or guess_mime_type(source.filename) or DEFAULT_MIME_TYPE
    return NormalizedImage(data=data, mime_type=_bare_mime(mime_type), filename=filename)


def normalize_base64(source: Base64Input) -> NormalizedImage:
    return _from_text(source.content)


def normalize_wrapped(source: WrappedInput) -> NormalizedImage:
    payload = source.payload
    nested = payload.get("image")
    if nested is not None:
        return normalize_image_input(nested)

    content = payload.get("content")
    if not isinstance(content, str):
        raise ImageInputError("Unsupported image input format")

    filename = payload.get("filename") or payload.get("name")
    if not isinstance(filename, str):
        filename = None
    explicit = payload.get("mimeType") or payload.get("mime_type")
    if not isinstance(explicit, str) or not explicit.strip():
        explicit = None
    header = _header_value(payload.get("headers"), "content-type")
    return _from_text(content, filename=filename, overrides=(explicit, header))


def _from_text(
    text: str,
    filename: Optional[str] = None,
    overrides: Tuple[Optional[str], ...] = (),
) -> NormalizedImage:
    stripped = text.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError:
            logger.debug("Image input looked like JSON but did not parse; treating as base64")
        else:
            return normalize_image_input(parsed)

    hint, payload = parse_data_url(stripped)
    data = decode_base64(payload)
    if not data:
        raise ImageInputError("Image input is empty")

    # explicit mimeType > Content-Type header > data-URL hint > filename guess > default
    candidates = [*overrides, hint, guess_mime_type(filename), DEFAULT_MIME_TYPE]
    mime_type = next(candidate for candidate in candidates if candidate)
    return NormalizedImage(
        data=data,
        mime_type=_bare_mime(mime_type),
        filename=filename or DEFAULT_FILENAME,
    )


async def normalize_upload(upload: UploadFile) -> NormalizedImage:
    """Read an uploaded multipart file and normalize it."""
    data = await upload.read()
    return normalize_bytes(BytesInput(data=data, filename=upload.filename, content_type=upload.content_type))


# ----------------- Remote images -----------------

def _download_image(url: str, timeout: float) -> Tuple[bytes, str]:
    response = requests.get(url, timeout=timeout)
    if not response.ok:
        raise RemoteImageError(
            f"Failed to fetch image from URL: Failed to fetch image: {response.status_code} {response.reason}"
        )
    content_type = response.headers.get("content-type", "")
    if not content_type.lower().startswith("image/"):
        raise RemoteImageError(
            f"Failed to fetch image from URL: URL does not point to an image. Content-Type: {content_type}"
        )
    return response.content, content_type


async def fetch_remote_image(url: str, timeout: float = 30.0) -> NormalizedImage:
    """Download an http(s) image and normalize it."""
    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise RemoteImageError("Failed to fetch image from URL: Only HTTP and HTTPS URLs are supported")

    logger.info(f"Fetching remote image: {url}")
    try:
        data, content_type = await asyncio.to_thread(_download_image, url.strip(), timeout)
    except requests.RequestException as e:
        raise RemoteImageError(f"Failed to fetch image from URL: {e}")

    filename = unquote(parsed.path.rsplit("/", 1)[-1]) or DEFAULT_FILENAME
    return normalize_bytes(BytesInput(data=data, filename=filename, content_type=content_type))

from __future__ import annotations

import asyncio
import base64
import binascii
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote_to_bytes

from loguru import logger

from .errors import RunnerError

if TYPE_CHECKING:
    from .client import ReplicateClient

_URL_RE = re.compile(r"^(https?://|data:)", re.IGNORECASE)
_URL_EXTENSION_RE = re.compile(r"\.([a-z0-9]{2,5})(?:\?|#|$)", re.IGNORECASE)
_DATA_URL_RE = re.compile(r"^data:([^;,]+)?(;base64)?,(.*)$", re.IGNORECASE | re.DOTALL)

EXTENSIONS_BY_CONTENT_TYPE = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/tiff": "tif",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
    "video/x-matroska": "mkv",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/flac": "flac",
    "audio/ogg": "ogg",
    "audio/webm": "webm",
    "audio/aac": "aac",
    "audio/mp4": "m4a",
}


def looks_like_url(value: Any) -> bool:
    return isinstance(value, str) and bool(_URL_RE.match(value.strip()))


def collect_urls(value: Any, urls: list[str] | None = None) -> list[str]:
    """Flatten every http(s) or data URL found in ``value``, in traversal order."""
    if urls is None:
        urls = []
    if looks_like_url(value):
        urls.append(value.strip())
    elif isinstance(value, list):
        for item in value:
            collect_urls(item, urls)
    elif isinstance(value, dict):
        for item in value.values():
            collect_urls(item, urls)
    return urls


def extension_from_content_type(content_type: str | None) -> str:
    media_type = str(content_type or "").lower().split(";")[0].strip()
    return EXTENSIONS_BY_CONTENT_TYPE.get(media_type, "bin")


def extension_from_url(url: str) -> str:
    match = _URL_EXTENSION_RE.search(str(url))
    return match.group(1).lower() if match else "bin"


def decode_data_url(url: str) -> tuple[str, bytes]:
    match = _DATA_URL_RE.match(url)
    if not match:
        raise RunnerError("download", "Unsupported data URL format.")
    content_type = match.group(1) or "application/octet-stream"
    data = match.group(3) or ""
    if match.group(2):
        try:
            padded = data + "=" * (-len(data) % 4)
            return content_type, base64.b64decode(padded)
        except (binascii.Error, ValueError) as exc:
            raise RunnerError("download", f"Invalid base64 data URL: {exc}") from exc
    return content_type, unquote_to_bytes(data)


def output_filename(prefix: str, index: int, extension: str) -> str:
    return f"{prefix}-{index + 1}.{extension}"


async def fetch_output(client: ReplicateClient, url: str) -> tuple[str, bytes]:
    """Return ``(extension, body)`` for one output URL."""
    if url[:5].lower() == "data:":
        content_type, body = decode_data_url(url)
        return extension_from_content_type(content_type), body

    content_type, body = await client.download(url)
    extension = extension_from_content_type(content_type)
    if extension == "bin":
        extension = extension_from_url(url)
    return extension, body


async def download_outputs(
    client: ReplicateClient,
    urls: list[str],
    prefix: str,
    dest: Path | str = ".",
) -> list[str]:
    files: list[str] = []
    for index, url in enumerate(urls):
        extension, body = await fetch_output(client, url)
        filename = output_filename(prefix, index, extension)
        try:
            await asyncio.to_thread(Path(dest, filename).write_bytes, body)
        except OSError as exc:
            raise RunnerError("download", f"Failed to write output file '{filename}': {exc}") from exc
        logger.info("saved output {} ({} bytes)", filename, len(body))
        files.append(filename)
    return files

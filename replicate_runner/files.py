from __future__ import annotations

import glob
import os
import re
from typing import Any, Awaitable, Callable, Iterable

from loguru import logger

from .client import ReplicateClient
from .errors import RunnerError
from .outputs import looks_like_url

FILES_PREFIX = "files:"

_WILDCARD_RE = re.compile(r"[*?\[]")
_LEADING_DOT_SLASH_RE = re.compile(r"^\./+")

Uploader = Callable[[str], Awaitable[str]]


def normalize_path(value: Any) -> str:
    return _LEADING_DOT_SLASH_RE.sub("", str(value or "").replace("\\", "/"))


def resolve_uploaded_file_url(payload: Any, api_base: str) -> str:
    """Pick the URL out of a ``POST /files`` response, or build one from its id."""
    if not isinstance(payload, dict):
        return ""
    urls = payload.get("urls") if isinstance(payload.get("urls"), dict) else {}
    candidates = (
        urls.get("download"),
        urls.get("get"),
        payload.get("url"),
        payload.get("download_url"),
        payload.get("href"),
        payload.get("file"),
    )
    for candidate in candidates:
        if looks_like_url(candidate):
            return candidate.strip()

    if payload.get("id"):
        return f"{api_base.rstrip('/')}/files/{payload['id']}"
    return ""


async def upload_input_file(client: ReplicateClient, filename: str, root: str = ".") -> str:
    payload = await client.upload_file(os.path.join(root, filename))
    url = resolve_uploaded_file_url(payload, client.base_url)
    if not url:
        raise RunnerError("upload", "Replicate file upload did not return a usable URL.")
    return url


def glob_patterns(pattern: str) -> list[str]:
    normalized = normalize_path(pattern)
    if "/" in normalized:
        return [normalized]
    # bare names also match inside any subdirectory
    return [normalized, f"**/{normalized}"]


def match_input_files(pattern: str, input_files: Iterable[str], root: str = ".") -> list[str]:
    """Return the declared input files whose paths match ``pattern`` on disk, in job order."""
    if not pattern:
        return []

    matches: set[str] = set()
    for glob_pattern in glob_patterns(pattern):
        for found in glob.glob(glob_pattern, root_dir=root, recursive=True):
            if os.path.isfile(os.path.join(root, found)):
                matches.add(normalize_path(found))

    if not matches:
        return []
    return [filename for filename in input_files if normalize_path(filename) in matches]


class FileResolver:
    """Rewrites ``files:<pattern>`` placeholders into uploaded-file URLs.

    Each local file is uploaded at most once per resolver; the cache is keyed by
    the filename as declared in the job.
    """

    def __init__(self, input_files: Iterable[str], upload: Uploader, root: str = ".") -> None:
        self.input_files = list(input_files)
        self.upload = upload
        self.root = root
        self.upload_cache: dict[str, str] = {}

    async def url_for(self, filename: str) -> str:
        if filename not in self.upload_cache:
            self.upload_cache[filename] = await self.upload(filename)
            logger.info("uploaded {} -> {}", filename, self.upload_cache[filename])
        return self.upload_cache[filename]

    async def resolve_placeholder(self, pattern: str) -> str | list[str]:
        if not pattern:
            return []

        matches = match_input_files(pattern, self.input_files, self.root)
        if not matches:
            logger.warning("no input files matched pattern {}", pattern)
            return []

        urls = [await self.url_for(filename) for filename in matches]
        if _WILDCARD_RE.search(pattern):
            return urls
        return urls[0] if len(urls) == 1 else urls

    async def resolve(self, value: Any) -> Any:
        if isinstance(value, str):
            trimmed = value.strip()
            if not trimmed.startswith(FILES_PREFIX):
                return value
            return await self.resolve_placeholder(trimmed[len(FILES_PREFIX):].strip())

        if isinstance(value, list):
            resolved: list[Any] = []
            for item in value:
                result = await self.resolve(item)
                if isinstance(result, list):
                    resolved.extend(result)
                else:
                    resolved.append(result)
            return resolved

        if isinstance(value, dict):
            return {key: await self.resolve(item) for key, item in value.items()}

        return value

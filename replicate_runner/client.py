from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from .errors import RunnerError
from .types import API_BASE

_CONTENT_TYPES_BY_EXTENSION = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
    "tif": "image/tiff",
    "tiff": "image/tiff",
    "bmp": "image/bmp",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "webm": "video/webm",
    "mkv": "video/x-matroska",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "flac": "audio/flac",
    "ogg": "audio/ogg",
    "aac": "audio/aac",
    "m4a": "audio/mp4",
}


def content_type_from_filename(filename: str) -> str:
    suffix = Path(str(filename)).suffix.lower().lstrip(".")
    return _CONTENT_TYPES_BY_EXTENSION.get(suffix, "application/octet-stream")


def _error_detail(payload: Any) -> str:
    if isinstance(payload, dict):
        for key in ("detail", "error", "message"):
            if payload.get(key):
                return str(payload[key])
    return "Unknown error."


class ReplicateClient:
    """Thin async wrapper over the Replicate REST API.

    Every call either returns the decoded payload or raises ``RunnerError``;
    nothing is retried.
    """

    def __init__(
        self,
        token: str,
        base_url: str = API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            timeout = httpx.Timeout(connect=10.0, read=120.0, write=60.0, pool=10.0)
            self._client = httpx.AsyncClient(timeout=timeout, transport=self._transport)
        return self._client

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.token}"}
        headers.update(extra)
        return headers

    async def request_json(self, method: str, url: str, **kwargs: Any) -> Any:
        client = await self._ensure_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise RunnerError("network", f"Failed to reach Replicate API: {exc}") from exc

        payload: Any = None
        if response.text:
            try:
                payload = response.json()
            except ValueError:
                payload = {"message": response.text}

        if not response.is_success:
            detail = _error_detail(payload)
            logger.error("replicate api error", status=response.status_code, url=url, detail=detail)
            raise RunnerError("replicate", f"Replicate API error ({response.status_code}): {detail}")

        return payload if payload is not None else {}

    async def create_prediction(
        self,
        version: str,
        payload: dict[str, Any],
        *,
        wait_seconds: float,
        cancel_after: str | None = None,
    ) -> Any:
        headers = self._headers(Prefer=f"wait={int(wait_seconds)}")
        if cancel_after:
            headers["Cancel-After"] = cancel_after
        return await self.request_json(
            "POST",
            f"{self.base_url}/predictions",
            json={"version": version, "input": payload},
            headers=headers,
        )

    def poll_url(self, prediction: dict[str, Any]) -> str:
        urls = prediction.get("urls")
        if isinstance(urls, dict) and urls.get("get"):
            return str(urls["get"])
        return f"{self.base_url}/predictions/{prediction.get('id')}"

    async def get_prediction(self, prediction: dict[str, Any]) -> Any:
        return await self.request_json("GET", self.poll_url(prediction), headers=self._headers())

    async def upload_file(self, path: str) -> Any:
        filename = Path(path).name
        try:
            data = await asyncio.to_thread(Path(path).read_bytes)
        except OSError as exc:
            raise RunnerError("upload", f"Failed to read input file '{path}': {exc}") from exc

        logger.info("uploading input file {} ({} bytes)", path, len(data))
        files = {"content": (filename, data, content_type_from_filename(filename))}
        return await self.request_json(
            "POST",
            f"{self.base_url}/files",
            files=files,
            headers=self._headers(),
        )

    async def download(self, url: str) -> tuple[str | None, bytes]:
        client = await self._ensure_client()
        try:
            response = await client.get(url, headers=self._headers())
        except httpx.HTTPError as exc:
            raise RunnerError("download", f"Failed to download output: {exc}") from exc

        if not response.is_success:
            raise RunnerError("download", f"Failed to download output ({response.status_code}).")

        return response.headers.get("content-type"), response.content

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

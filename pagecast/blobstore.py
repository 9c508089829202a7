"""Binary object storage for PDFs, covers and generated audio.

A blob store exposes ``put``, ``get``, ``get_public_url`` and
``delete_prefix``. Paths are slash separated and relative to the store
root; every book keeps its objects under ``<user_id>/<book_id>/`` so a
whole book can be removed with one prefix delete.

Two backends are provided. :class:`LocalBlobStore` writes to a directory
that the API serves under ``/media``. :class:`SupabaseBlobStore` talks to
the Supabase storage REST API with ``httpx`` and returns public bucket
URLs.
"""

from __future__ import annotations

import asyncio
import re
import shutil
from pathlib import Path
from typing import Optional, Protocol

import httpx

from .errors import ExternalServiceError, NotFoundError, ValidationError


def sanitize_file_name(file_name: str) -> str:
    """Keep only alphanumerics, dots and hyphens in an uploaded file name."""
    cleaned = re.sub(r"[^a-zA-Z0-9.-]", "_", file_name)
    cleaned = re.sub(r"_{2,}", "_", cleaned)
    return cleaned.strip("_") or "file"


def _normalise(path: str) -> str:
    parts = [part for part in path.replace("\\", "/").split("/") if part]
    if not parts or any(part in {".", ".."} for part in parts):
        raise ValidationError(f"Invalid blob path {path!r}")
    return "/".join(parts)


class BlobStore(Protocol):
    # whether URLs are reachable by external services such as the OCR engine
    public: bool

    async def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        ...

    async def get(self, path: str) -> bytes:
        ...

    def get_public_url(self, path: str) -> str:
        ...

    async def delete_prefix(self, prefix: str) -> None:
        ...


class LocalBlobStore:
    """Filesystem backed store. Public URLs point at the ``/media`` route."""

    public = False

    def __init__(self, root: str, public_base_url: str = "") -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def local_path(self, path: str) -> Path:
        return self.root / _normalise(path)

    async def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        target = self.local_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_bytes, data)
        return self.get_public_url(path)

    async def get(self, path: str) -> bytes:
        target = self.local_path(path)
        if not target.is_file():
            raise NotFoundError(f"Blob {path} not found")
        return await asyncio.to_thread(target.read_bytes)

    def get_public_url(self, path: str) -> str:
        return f"{self.public_base_url}/media/{_normalise(path)}"

    async def delete_prefix(self, prefix: str) -> None:
        target = self.local_path(prefix)
        if target.is_dir():
            await asyncio.to_thread(shutil.rmtree, target)
        elif target.is_file():
            target.unlink()


class SupabaseBlobStore:
    """Supabase storage bucket accessed through its REST API."""

    public = True

    def __init__(self, url: str, key: str, bucket: str = "books", timeout: float = 60.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.url = url.rstrip("/")
        self.key = key
        self.bucket = bucket
        self.timeout = timeout
        self._transport = transport

    @property
    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.key}", "apikey": self.key}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, headers=self._headers, transport=self._transport)

    async def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        path = _normalise(path)
        async with self._client() as client:
            response = await client.post(
                f"{self.url}/storage/v1/object/{self.bucket}/{path}",
                content=data,
                headers={"Content-Type": content_type, "Cache-Control": "3600", "x-upsert": "true"},
            )
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Storage upload of {path} failed with HTTP {response.status_code}", service="storage"
            )
        return self.get_public_url(path)

    async def get(self, path: str) -> bytes:
        path = _normalise(path)
        async with self._client() as client:
            response = await client.get(f"{self.url}/storage/v1/object/{self.bucket}/{path}")
        if response.status_code in (400, 404):
            raise NotFoundError(f"Blob {path} not found")
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Storage download of {path} failed with HTTP {response.status_code}", service="storage"
            )
        return response.content

    def get_public_url(self, path: str) -> str:
        return f"{self.url}/storage/v1/object/public/{self.bucket}/{_normalise(path)}"

    async def _list(self, client: httpx.AsyncClient, prefix: str) -> list:
        response = await client.post(
            f"{self.url}/storage/v1/object/list/{self.bucket}",
            json={"prefix": prefix, "limit": 1000},
        )
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Storage listing of {prefix} failed with HTTP {response.status_code}", service="storage"
            )
        names = []
        for entry in response.json():
            full = f"{prefix}/{entry['name']}"
            # folders come back without an id
            if entry.get("id") is None:
                names.extend(await self._list(client, full))
            else:
                names.append(full)
        return names

    async def delete_prefix(self, prefix: str) -> None:
        prefix = _normalise(prefix)
        async with self._client() as client:
            names = await self._list(client, prefix)
            if not names:
                return
            response = await client.request(
                "DELETE",
                f"{self.url}/storage/v1/object/{self.bucket}",
                json={"prefixes": names},
            )
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Storage delete of {prefix} failed with HTTP {response.status_code}", service="storage"
            )

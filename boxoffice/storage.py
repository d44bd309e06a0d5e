from __future__ import annotations
import asyncio
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx


class ObjectStorage(ABC):
    """put() is overwrite-idempotent: same path, same object."""

    @abstractmethod
    async def put(self, path: str, data: bytes, content_type: str) -> str: ...

    @abstractmethod
    async def delete(self, path: str) -> None: ...


class LocalStorage(ObjectStorage):
    def __init__(self, root: str, public_url: str) -> None:
        self.root = Path(root)
        self.public_url = public_url.rstrip("/")

    def _target(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise ValueError(f"path escapes storage root: {path}")
        return target

    def _write(self, target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        # write-then-rename so readers never see a half written file
        tmp = target.with_suffix(target.suffix + ".part")
        tmp.write_bytes(data)
        os.replace(tmp, target)

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        await asyncio.to_thread(self._write, self._target(path), data)
        return f"{self.public_url}/{path}"

    async def delete(self, path: str) -> None:
        await asyncio.to_thread(self._target(path).unlink, missing_ok=True)


class HttpStorage(ObjectStorage):
    """PUT/DELETE against an object store speaking plain HTTP."""

    def __init__(self, base_url: str, token: str = "",
                 http: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.http = http or httpx.AsyncClient(timeout=10.0)

    def _headers(self, content_type: Optional[str] = None) -> dict:
        h = {}
        if self.token:
            h["authorization"] = f"Bearer {self.token}"
        if content_type:
            h["content-type"] = content_type
            h["cache-control"] = "public, max-age=31536000"
        return h

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        url = f"{self.base_url}/{path}"
        r = await self.http.put(url, content=data,
                                headers=self._headers(content_type))
        r.raise_for_status()
        return url

    async def delete(self, path: str) -> None:
        r = await self.http.delete(f"{self.base_url}/{path}",
                                   headers=self._headers())
        if r.status_code != 404:
            r.raise_for_status()


def new_storage(backend: str, *, root: str = "", public_url: str = "",
                http_url: str = "", token: str = "",
                http: Optional[httpx.AsyncClient] = None) -> ObjectStorage:
    if backend == "http":
        if not http_url:
            raise RuntimeError("HttpStorage requires STORAGE_HTTP_URL")
        return HttpStorage(http_url, token, http)
    if backend == "local":
        return LocalStorage(root, public_url)
    raise RuntimeError(f"unknown storage backend: {backend}")

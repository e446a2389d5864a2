# blobstore.py
"""
Content-addressed storage for file and voice attachments.

Only the reference `scheme://cid/name` goes on the ledger; the bytes live
here. `LocalBlobStore` keeps them on disk (the ledger node serves it over
HTTP), `HttpBlobStore` talks to a node's /api/upload and /api/blob routes.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Optional

import httpx

from config import settings
from crypto_utils import sha256_hex
from envelope import file_reference
from exceptions import BlobStoreError


class BlobStore:
    async def put(self, data: bytes, name: str) -> str:
        """Store `data` and return its reference `scheme://cid/name`."""
        raise NotImplementedError

    async def get(self, cid: str) -> Optional[bytes]:
        raise NotImplementedError


def safe_name(name: str) -> str:
    # the name travels inside a URL-like reference; keep it one path segment
    return os.path.basename((name or "file").replace("\\", "/")) or "file"


class LocalBlobStore(BlobStore):
    def __init__(self, path: Optional[str] = None, *, max_bytes: Optional[int] = None) -> None:
        self.base = Path(path or settings["blob_storage_path"])
        self.base.mkdir(parents=True, exist_ok=True)
        self.max_bytes = int(max_bytes or settings.get("max_payload_bytes", 10_485_760))

    def store(self, data: bytes) -> str:
        """Write `data` under its sha256 content id (atomic replace) and return the cid."""
        if len(data) > self.max_bytes:
            raise BlobStoreError(f"attachment of {len(data)} bytes exceeds {self.max_bytes}")
        cid = sha256_hex(data)
        dst = self.base / cid
        # Skip if already present
        if dst.exists():
            return cid
        tmp = self.base / f".{cid}.tmp"
        with open(tmp, "wb") as f:
            f.write(data)
        # Atomic replace to avoid partial files
        os.replace(tmp, dst)
        return cid

    def fetch(self, cid: str) -> Optional[bytes]:
        """Read a blob back, verifying it still hashes to its cid."""
        path = self.base / os.path.basename(cid)
        if not path.exists():
            return None
        data = path.read_bytes()
        if sha256_hex(data) != cid:
            raise BlobStoreError(f"blob {cid[:8]}… failed its integrity check")
        return data

    async def put(self, data: bytes, name: str) -> str:
        cid = await asyncio.to_thread(self.store, data)
        return file_reference(cid, safe_name(name))

    async def get(self, cid: str) -> Optional[bytes]:
        return await asyncio.to_thread(self.fetch, cid)


class HttpBlobStore(BlobStore):
    def __init__(self, base_url: Optional[str] = None, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = (base_url or settings["ledger_url"]).rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url, timeout=settings.get("request_timeout_secs", 10)
        )

    async def put(self, data: bytes, name: str) -> str:
        try:
            r = await self._client.post("/api/upload", params={"name": safe_name(name)}, content=data)
        except httpx.HTTPError as e:
            raise BlobStoreError(f"upload failed: {e}") from e
        if r.status_code != 200:
            raise BlobStoreError(f"upload rejected ({r.status_code}): {r.text}")
        return r.json()["ref"]

    async def get(self, cid: str) -> Optional[bytes]:
        try:
            r = await self._client.get(f"/api/blob/{cid}")
        except httpx.HTTPError as e:
            raise BlobStoreError(f"download failed: {e}") from e
        if r.status_code == 404:
            return None
        if r.status_code != 200:
            raise BlobStoreError(f"download failed ({r.status_code}): {r.text}")
        data = r.content
        if sha256_hex(data) != cid:
            raise BlobStoreError(f"blob {cid[:8]}… failed its integrity check")
        return data

    async def aclose(self) -> None:
        await self._client.aclose()

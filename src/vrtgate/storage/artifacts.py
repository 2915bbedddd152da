"""Snapshot byte storage behind a small key/value interface."""

import asyncio
import os
import re
from pathlib import Path
from typing import Protocol

from ..capture.codec import content_hash
from ..capture.types import Snapshot
from ..utils.logging import get_structured_logger
from .types import ArtifactNotFoundError, StorageError

logger = get_structured_logger(__name__)

_SAFE = re.compile(r"[^A-Za-z0-9._-]")


def artifact_key(site_id: str, device: str, kind: str, snapshot: Snapshot) -> str:
    """``{site}/{device}/{kind}/{page_id}-{hash12}.{ext}``; content-addressed."""
    parts = [_SAFE.sub("-", p) for p in (site_id, device, kind, snapshot.page_id)]
    ext = snapshot.image_format.value
    return f"{parts[0]}/{parts[1]}/{parts[2]}/{parts[3]}-{snapshot.content_hash[:12]}.{ext}"


def diff_key(site_id: str, device: str, page_id: str, data: bytes) -> str:
    """``{site}/{device}/diff/{page_id}-{hash12}.png`` for a rendered diff overlay."""
    parts = [_SAFE.sub("-", p) for p in (site_id, device, page_id)]
    return f"{parts[0]}/{parts[1]}/diff/{parts[2]}-{content_hash(data)[:12]}.png"


class ArtifactStore(Protocol):
    async def put(self, key: str, data: bytes) -> str:
        ...

    async def get(self, key: str) -> bytes:
        ...

    async def delete(self, key: str) -> bool:
        ...


class LocalArtifactStore:
    """Stores artifacts as files below ``root``."""

    def __init__(self, root: str):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Artifact key escapes the store root: {key}")
        return path

    async def put(self, key: str, data: bytes) -> str:
        path = self._path(key)
        await asyncio.to_thread(_write_atomic, path, data)
        logger.debug("Stored artifact", key=key, size=len(data))
        return key

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(f"Artifact not found: {key}") from e

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path(key).exists)

    async def delete(self, key: str) -> bool:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink)
            return True
        except FileNotFoundError:
            return False


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "wb") as f:
        f.write(data)
    os.replace(tmp, path)

# blob_store.py
from __future__ import annotations
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import base58

logger = logging.getLogger("emoji-cipher.storage")

DEFAULT_BUCKET = "encrypted-files"
CIPHER_PREFIX = "cipher"
META_PREFIX = "meta"
_EXT_RE = re.compile(r"^[A-Za-z0-9]{1,16}$")


class StorageError(RuntimeError):
    pass


class BlobNotFound(StorageError):
    pass


class BlobStore(Protocol):
    def put(self, data: bytes, name: Optional[str] = None) -> str: ...

    def get(self, object_id: str) -> bytes: ...


@dataclass
class StorageItem:
    name: str
    id: str
    updated_at: float
    size: int


def generate_object_id(filename: Optional[str] = None) -> str:
    """``cipher/<epoch-ms>-<random>.<ext>``; ext taken from ``filename`` when sane."""
    ext = "bin"
    if filename and "." in filename:
        candidate = filename.rsplit(".", 1)[1]
        if _EXT_RE.match(candidate):
            ext = candidate.lower()
    rand = base58.b58encode(os.urandom(8)).decode("ascii")
    return f"{CIPHER_PREFIX}/{int(time.time() * 1000)}-{rand}.{ext}"


def meta_path_for(object_id: str) -> str:
    # cipher/123.bin -> meta/cipher/123.bin.json
    return f"{META_PREFIX}/{object_id}.json"


class MemoryBlobStore:
    def __init__(self):
        self._objects: Dict[str, bytes] = {}

    def put(self, data: bytes, name: Optional[str] = None) -> str:
        object_id = generate_object_id(name)
        self._objects[object_id] = bytes(data)
        return object_id

    def get(self, object_id: str) -> bytes:
        try:
            return self._objects[object_id]
        except KeyError:
            raise BlobNotFound(f"Download failed: no object {object_id!r}") from None


class LocalBlobStore:
    """Filesystem store laid out as ``<root>/<bucket>/{cipher,meta}/...``."""

    def __init__(self, root, bucket: str = DEFAULT_BUCKET):
        self.bucket = bucket
        self.base = Path(root).resolve() / bucket

    def _resolve(self, relative: str) -> Path:
        path = (self.base / relative).resolve()
        if path != self.base and self.base not in path.parents:
            raise StorageError(f"Invalid object id: {relative!r}")
        return path

    def put(self, data: bytes, name: Optional[str] = None) -> str:
        object_id = generate_object_id(name)
        path = self._resolve(object_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "xb") as fh:
                fh.write(data)
        except OSError as exc:
            raise StorageError(f"Upload failed: {exc}") from exc
        logger.info("stored %s (%d bytes)", object_id, len(data))
        return object_id

    def get(self, object_id: str) -> bytes:
        path = self._resolve(object_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise BlobNotFound(f"Download failed: no object {object_id!r}") from None
        except OSError as exc:
            raise StorageError(f"Download failed: {exc}") from exc

    def put_meta(self, object_id: str, meta: Dict[str, Any]) -> None:
        # Sidecar only feeds listing; the token already carries everything needed to decrypt
        try:
            path = self._resolve(meta_path_for(object_id))
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(meta), encoding="utf-8")
        except (OSError, StorageError) as exc:
            logger.warning("Meta upload failed for %s: %s", object_id, exc)

    def get_meta(self, object_id: str) -> Optional[Dict[str, Any]]:
        try:
            text = self._resolve(meta_path_for(object_id)).read_text(encoding="utf-8")
            return json.loads(text)
        except (OSError, StorageError, ValueError):
            return None

    def list_objects(self, limit: int = 100) -> List[StorageItem]:
        folder = self.base / CIPHER_PREFIX
        if not folder.is_dir():
            return []
        items = []
        for entry in folder.iterdir():
            if not entry.is_file():
                continue
            try:
                stat = entry.stat()
            except FileNotFoundError:
                # removed between listing and stat
                continue
            items.append(StorageItem(
                name=entry.name,
                id=f"{CIPHER_PREFIX}/{entry.name}",
                updated_at=stat.st_mtime,
                size=stat.st_size,
            ))
        items.sort(key=lambda item: item.updated_at, reverse=True)
        return items[:limit]

import base64
import binascii
import logging
import os
import random
import time
from pathlib import Path
from typing import Optional, Protocol, Tuple

import gridfs
from gridfs.errors import NoFile
from bson import ObjectId
from fastapi.concurrency import run_in_threadpool
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """The file payload could not be decoded or stored."""


class FileStorage(Protocol):
    async def save(self, file_name: str, data: bytes, mime_type: Optional[str]) -> str: ...


def decode_file_payload(encoded: str) -> bytes:
    """Decode a base64 payload, accepting an optional ``data:<mime>;base64,`` prefix."""
    if encoded.startswith("data:") and "," in encoded:
        encoded = encoded.split(",", 1)[1]
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise StorageError(f"invalid file payload: {e}") from e


def _unique_name(file_name: str) -> str:
    ext = Path(file_name).suffix
    return f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}{ext}"


class LocalFileStorage:
    def __init__(self, root: str, base_url: str = "", folder: str = "chat"):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.folder = folder

    def _write(self, file_name: str, data: bytes) -> str:
        target_dir = self.root / self.folder
        name = _unique_name(file_name)
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            (target_dir / name).write_bytes(data)
        except OSError as e:
            raise StorageError(f"could not store {file_name}: {e}") from e
        logger.info("stored %s (%d bytes) as %s/%s", file_name, len(data), self.folder, name)
        return f"{self.base_url}/uploads/{self.folder}/{name}"

    async def save(self, file_name: str, data: bytes, mime_type: Optional[str]) -> str:
        return await run_in_threadpool(self._write, file_name, data)


class GridFSFileStorage:
    def __init__(self, db: Database, base_url: str = "", collection: str = "chat_files"):
        self.fs = gridfs.GridFS(db, collection=collection)
        self.base_url = base_url.rstrip("/")

    def _put(self, file_name: str, data: bytes, mime_type: Optional[str]) -> str:
        try:
            file_id = self.fs.put(data, filename=file_name, metadata={"contentType": mime_type})
        except PyMongoError as e:
            raise StorageError(f"could not store {file_name}: {e}") from e
        return f"{self.base_url}/files/{file_id}"

    async def save(self, file_name: str, data: bytes, mime_type: Optional[str]) -> str:
        return await run_in_threadpool(self._put, file_name, data, mime_type)

    def _open(self, file_id: str) -> Optional[Tuple[bytes, str, str]]:
        if not ObjectId.is_valid(file_id):
            return None
        try:
            grid_out = self.fs.get(ObjectId(file_id))
        except NoFile:
            return None
        metadata = grid_out.metadata or {}
        mime_type = metadata.get("contentType") or "application/octet-stream"
        return grid_out.read(), mime_type, grid_out.filename or file_id

    async def open(self, file_id: str) -> Optional[Tuple[bytes, str, str]]:
        """Return ``(data, mime_type, file_name)`` or None when the file is unknown."""
        return await run_in_threadpool(self._open, file_id)


def make_file_storage(settings, db: Optional[Database] = None) -> FileStorage:
    if settings.file_storage == "gridfs":
        if db is None:
            raise ValueError("FILE_STORAGE=gridfs requires a MongoDB connection")
        return GridFSFileStorage(db, settings.public_base_url)
    os.makedirs(settings.upload_dir, exist_ok=True)
    return LocalFileStorage(settings.upload_dir, settings.public_base_url)

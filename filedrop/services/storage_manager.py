import os
import re
import shutil
import time
import unicodedata
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

import aiofiles
import aiofiles.os

import config
from filedrop.errors import InvalidStorageKey, NotFound, SizeLimitExceeded, StorageIOError
from filedrop.models import StoredFile
from filedrop.utils import format_bytes
from logger_config import setup_logger

logger = setup_logger()

_KEY_PATTERN = re.compile(r'^[a-zA-Z0-9._-]+$')
# uuid4 (36 chars) - epoch millis - sanitized name
_KEY_PARTS = re.compile(r'^[0-9a-f]{8}(?:-[0-9a-f]{4}){3}-[0-9a-f]{12}-(\d+)-(.+)$')
_UNSAFE_CHARS = re.compile(r'[^a-zA-Z0-9._-]')
_DOT_RUNS = re.compile(r'\.{2,}')


def sanitize_filename(name: Optional[str], max_length: int = config.MAX_NAME_LENGTH) -> str:
    """Reduce a client supplied filename to a safe, human readable token.

    Directory components are dropped, unicode is folded to ASCII, anything
    outside ``[a-zA-Z0-9._-]`` becomes ``_`` and runs of dots collapse to one,
    so the result can never climb out of the storage directory.
    """
    if not name:
        return "file"

    # Browsers on Windows may send the full client path
    name = re.split(r'[\\/]', name)[-1]
    name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    name = _UNSAFE_CHARS.sub("_", name)
    name = _DOT_RUNS.sub(".", name)
    name = name.lstrip(".-")

    if len(name) > max_length:
        stem, dot, ext = name.rpartition(".")
        if dot and stem and len(ext) < max_length // 2:
            name = stem[:max_length - len(ext) - 1] + "." + ext
        else:
            name = name[:max_length]

    return name or "file"


def is_valid_key(storage_key: str) -> bool:
    """Check if a storage key is safe to map onto the storage directory."""
    if not storage_key or len(storage_key) > config.MAX_KEY_LENGTH:
        return False
    if storage_key.startswith(".") or ".." in storage_key:
        return False
    return bool(_KEY_PATTERN.match(storage_key))


class StorageManager:
    def __init__(self, data_dir: Path, temp_dir: Path):
        self.data_dir = Path(data_dir)
        self.temp_dir = Path(temp_dir)

    async def initialize(self):
        """Create directories, drop stale partial uploads and log current usage."""
        logger.info("Initializing storage manager...")

        self.data_dir.mkdir(exist_ok=True, parents=True)
        self.temp_dir.mkdir(exist_ok=True, parents=True)
        logger.debug(f"Storage directories created/verified: {self.data_dir}, {self.temp_dir}")

        # Finished uploads are moved out of the temp dir with a rename
        if self._device(self.data_dir) != self._device(self.temp_dir):
            raise RuntimeError(
                f"Temporary directory {self.temp_dir} must be on the same filesystem as {self.data_dir}"
            )

        files_removed = await self._clean_temp_dir()
        logger.info(f"Cleaned temporary directory, removed {files_removed} files")

        file_count, total_size = await self._calculate_usage()
        logger.info(f"Stored files: {file_count}, total size: {format_bytes(total_size)}")

        _, _, free = shutil.disk_usage(str(self.data_dir))
        if free < config.MAX_FILE_SIZE:
            logger.warning(
                f"Low disk space: {format_bytes(free)} free, "
                f"a single upload may take up to {format_bytes(config.MAX_FILE_SIZE)}"
            )

    @staticmethod
    def _device(path: Path) -> int:
        return os.stat(path).st_dev

    async def _clean_temp_dir(self) -> int:
        files_removed = 0
        for file in self.temp_dir.glob("*"):
            if file.is_file():
                await aiofiles.os.unlink(file)
                files_removed += 1
        return files_removed

    async def _calculate_usage(self):
        file_count = 0
        total_size = 0
        for file in self.data_dir.iterdir():
            if file.is_file():
                stat = await aiofiles.os.stat(file)
                file_count += 1
                total_size += stat.st_size
        return file_count, total_size

    def generate_storage_key(self, original_name: Optional[str]) -> str:
        """Build a unique key: ``<uuid4>-<epoch millis>-<sanitized name>``."""
        millis = int(time.time() * 1000)
        return f"{uuid.uuid4()}-{millis}-{sanitize_filename(original_name)}"

    def validate_key(self, storage_key: str):
        """Validate the key and raise InvalidStorageKey if it is unsafe."""
        if not is_valid_key(storage_key):
            raise InvalidStorageKey(storage_key)

    def get_file_path(self, storage_key: str) -> Path:
        """Map a storage key to its path inside the storage directory."""
        self.validate_key(storage_key)
        path = self.data_dir / storage_key
        if path.resolve().parent != self.data_dir.resolve():
            raise InvalidStorageKey(storage_key)
        return path

    def _temp_path(self, storage_key: str) -> Path:
        return self.temp_dir / f"{storage_key}.part"

    async def persist(self, byte_stream: AsyncIterator[bytes], storage_key: str, max_bytes: int) -> int:
        """Stream chunks into storage under ``storage_key``.

        Data goes to a temp file first and is renamed into the storage
        directory only once complete, so a failed, oversized or cancelled
        upload never leaves a partial file behind.

        Returns:
            int: Number of bytes written

        Raises:
            SizeLimitExceeded: The stream grew past ``max_bytes``
            StorageIOError: Any underlying filesystem failure
        """
        final_path = self.get_file_path(storage_key)
        temp_path = self._temp_path(storage_key)

        size = 0
        completed = False
        try:
            async with aiofiles.open(temp_path, 'wb') as f:
                async for chunk in byte_stream:
                    size += len(chunk)
                    if size > max_bytes:
                        raise SizeLimitExceeded(max_bytes)
                    await f.write(chunk)

            await aiofiles.os.rename(str(temp_path), str(final_path))
            completed = True
        except OSError as e:
            raise StorageIOError(f"Failed to store {storage_key}: {e}") from e
        finally:
            if not completed:
                await self._discard_path(temp_path)

        logger.debug(f"Stored {storage_key} ({size} bytes)")
        return size

    async def _discard_path(self, path: Path):
        try:
            if await aiofiles.os.path.exists(path):
                await aiofiles.os.unlink(path)
                logger.debug(f"Removed partial file: {path.name}")
        except OSError as e:
            logger.error(f"Could not remove partial file {path.name}: {e}")

    async def discard(self, storage_key: str):
        """Remove a stored file; used to roll back an upload rejected after storing."""
        await self._discard_path(self.get_file_path(storage_key))

    async def resolve(self, storage_key: str) -> StoredFile:
        """Look up a stored file by key.

        Raises:
            InvalidStorageKey: The key is malformed or points outside the storage directory
            NotFound: Nothing is stored under the key
        """
        path = self.get_file_path(storage_key)
        if not await aiofiles.os.path.isfile(path):
            raise NotFound(storage_key)

        try:
            stat = await aiofiles.os.stat(path)
        except FileNotFoundError:
            raise NotFound(storage_key)
        except OSError as e:
            raise StorageIOError(f"Failed to stat {storage_key}: {e}") from e

        display_name, created_at = self.parse_key(storage_key)
        if created_at is None:
            created_at = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)

        return StoredFile(
            storage_key=storage_key,
            original_name=display_name,
            size_bytes=stat.st_size,
            created_at=created_at,
        )

    async def iter_bytes(self, storage_key: str, chunk_size: int = config.CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Yield the stored bytes of ``storage_key`` in chunks."""
        path = self.get_file_path(storage_key)
        async with aiofiles.open(path, 'rb') as f:
            while chunk := await f.read(chunk_size):
                yield chunk

    @staticmethod
    def parse_key(storage_key: str):
        """Split a generated key into its display name and creation time.

        Keys that were not produced by ``generate_storage_key`` fall back to
        the whole key as name and no timestamp.
        """
        match = _KEY_PARTS.match(storage_key)
        if not match:
            return storage_key, None
        millis, name = match.groups()
        created_at = datetime.fromtimestamp(int(millis) / 1000, tz=timezone.utc)
        return name, created_at

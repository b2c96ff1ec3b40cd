"""Flat-directory blob storage.

Each blob lives in ``<storage_dir>/<entry_id>``. The store knows nothing
about limits or metadata; keeping it consistent with the index is the
blob engine's job.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterable, AsyncIterator
from pathlib import Path
from typing import TYPE_CHECKING
from uuid import UUID

import aiofiles
import aiofiles.os

from ephemera.errors import BlobTooLargeError

if TYPE_CHECKING:
    from aiofiles.threadpool.binary import AsyncBufferedReader

CHUNK_SIZE = 64 * 1024


def is_valid_id(entry_id: str) -> bool:
    """Check that an id is a canonical (lowercase, hyphenated) UUID."""
    try:
        return str(UUID(entry_id)) == entry_id
    except (ValueError, TypeError, AttributeError):
        return False


class BlobReader:
    """An open blob, read in chunks."""

    def __init__(self, handle: AsyncBufferedReader) -> None:
        self._handle = handle
        self.size = os.fstat(handle.fileno()).st_size

    async def chunks(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        while chunk := await self._handle.read(chunk_size):
            yield chunk

    async def read(self) -> bytes:
        return await self._handle.read()

    async def aclose(self) -> None:
        await self._handle.close()


class BlobStore:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def path(self, entry_id: str) -> Path:
        """Resolve the blob path, refusing anything outside the root."""
        root = self.root.resolve()
        candidate = (root / entry_id).resolve()
        if candidate.parent != root:
            raise ValueError(f"Blob id escapes storage directory: {entry_id!r}")
        return candidate

    async def exists(self, entry_id: str) -> bool:
        return await aiofiles.os.path.isfile(self.path(entry_id))

    async def write(
        self,
        entry_id: str,
        chunks: AsyncIterable[bytes],
        *,
        max_size: int = 0,
    ) -> int:
        """Stream chunks into a new blob and return its size.

        The file is created exclusively: an existing blob with the same id
        raises ``FileExistsError`` and is left untouched. On any failure
        after creation (including exceeding ``max_size``) the partial file
        is removed.
        """
        path = self.path(entry_id)
        handle = await aiofiles.open(path, "xb")
        size = 0
        try:
            try:
                async for chunk in chunks:
                    size += len(chunk)
                    if max_size and size > max_size:
                        raise BlobTooLargeError(max_size)
                    await handle.write(chunk)
            finally:
                await handle.close()
        except Exception:
            await self.delete(entry_id, missing_ok=True)
            raise
        return size

    async def open(self, entry_id: str) -> BlobReader:
        """Open a blob for reading. Raises ``FileNotFoundError`` if absent."""
        handle = await aiofiles.open(self.path(entry_id), "rb")
        return BlobReader(handle)

    async def delete(self, entry_id: str, *, missing_ok: bool = False) -> bool:
        """Unlink a blob. Returns False if it did not exist and missing_ok is set."""
        try:
            await aiofiles.os.remove(self.path(entry_id))
        except FileNotFoundError:
            if not missing_ok:
                raise
            return False
        return True

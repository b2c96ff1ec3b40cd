"""Blob engine: keeps blob files and index rows consistent.

Two stores back every entry: a file in the blob directory and a row in the
metadata index. No transaction spans both, so each operation orders its
steps so that a crash or a concurrent reader can only ever see one of:

- a row with its blob (the normal case);
- a blob with no row (unreachable, harmless);
- a row with no blob, which readers detect and clean up as "not found".

Reads always consult the index before touching the disk. Blob unlinks
after a row deletion happen either inside the same transaction (lazy
eviction on fetch) or after it commits (sweep, explicit removal).
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from uuid import uuid4

from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from ephemera.errors import ConflictError, NotFoundError, StorageError
from ephemera.index import MetadataIndex
from ephemera.limits import Limits
from ephemera.storage import CHUNK_SIZE, BlobReader, BlobStore, is_valid_id

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Extra attempts for a fetch that loses a serialization conflict
SERIALIZATION_RETRIES = 1

# SQLSTATE for serialization_failure (PostgreSQL)
SERIALIZATION_FAILURE = "40001"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_entry_id() -> str:
    return str(uuid4())


def is_serialization_failure(exc: BaseException) -> bool:
    """Whether a database error is a retryable serialization conflict."""
    if not isinstance(exc, DBAPIError):
        return False
    return getattr(exc.orig, "sqlstate", None) == SERIALIZATION_FAILURE


async def _single_chunk(data: bytes) -> AsyncIterator[bytes]:
    yield data


class OpenBlob:
    """A blob returned by the engine, already committed as used.

    Close it when done, or use it as an async context manager.
    """

    def __init__(self, entry_id: str, content_type: str | None, reader: BlobReader) -> None:
        self.entry_id = entry_id
        self.content_type = content_type
        self._reader = reader

    @property
    def size(self) -> int:
        return self._reader.size

    def chunks(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        return self._reader.chunks(chunk_size)

    async def read(self) -> bytes:
        return await self._reader.read()

    async def aclose(self) -> None:
        await self._reader.aclose()

    async def __aenter__(self) -> OpenBlob:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


class BlobEngine:
    """Add, fetch, inspect, remove and sweep entries.

    Usage:
        engine = BlobEngine(BlobStore(path), create_session_factory(db))
        entry_id = await engine.add_blob(b"hello", "text/plain", max_uses=1)
        async with await engine.fetch_blob(entry_id) as blob:
            data = await blob.read()
    """

    def __init__(
        self,
        blobs: BlobStore,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        limits: Limits | None = None,
        clock: Clock = utc_now,
        id_factory: Callable[[], str] = new_entry_id,
    ) -> None:
        self.blobs = blobs
        self.limits = limits or Limits()
        self._session_factory = session_factory
        self._clock = clock
        self._id_factory = id_factory

    def now(self) -> datetime:
        return self._clock()

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[MetadataIndex]:
        """One index transaction; database errors become StorageError."""
        try:
            async with self._session_factory() as session, session.begin():
                yield MetadataIndex(session)
        except SQLAlchemyError as exc:
            raise StorageError(operation, exc) from exc

    async def _unlink(self, entry_id: str, operation: str) -> None:
        try:
            await self.blobs.delete(entry_id, missing_ok=True)
        except OSError as exc:
            raise StorageError(operation, exc) from exc

    async def add_blob(
        self,
        data: AsyncIterable[bytes] | bytes,
        content_type: str | None = None,
        max_uses: int | None = None,
        expires_at: datetime | None = None,
    ) -> str:
        """Store a blob and its index row, returning the new entry id.

        The blob is written first under a fresh id and the row inserted
        afterwards. If the insert fails the blob is deleted again and the
        insert error is raised.

        Raises:
            ConflictError: The generated id is already in use.
            BlobTooLargeError: The data exceeds ``limits.max_blob_size``.
            StorageError: Writing the blob or inserting the row failed.
        """
        chunks = _single_chunk(data) if isinstance(data, bytes) else data
        entry_id = self._id_factory()
        try:
            size = await self.blobs.write(entry_id, chunks, max_size=self.limits.max_blob_size)
        except FileExistsError as exc:
            raise ConflictError(entry_id) from exc
        except OSError as exc:
            raise StorageError("add_blob", exc) from exc

        try:
            async with self._transaction("add_blob") as index:
                await index.insert(entry_id, content_type, max_uses, expires_at)
        except Exception:
            try:
                await self.blobs.delete(entry_id, missing_ok=True)
            except OSError:
                logger.exception("Failed to remove blob %s after index insert failure", entry_id)
            raise

        logger.debug(
            "Added %s (%d bytes, max_uses=%s, expires_at=%s)", entry_id, size, max_uses, expires_at
        )
        return entry_id

    async def fetch_blob(self, entry_id: str) -> OpenBlob:
        """Open a blob, counting one use of it.

        An entry found expired or used up is evicted on the spot and
        reported as not found. The use is committed before the blob is
        returned, so a failed commit surfaces here rather than mid-stream.

        Raises:
            NotFoundError: The id is malformed, absent, expired or exhausted.
            StorageError: The index or the blob directory failed.
        """
        return await self._open(entry_id, "fetch_blob", count_use=True)

    async def open_blob_raw(self, entry_id: str) -> OpenBlob:
        """Open a blob without counting a use or checking expiry."""
        return await self._open(entry_id, "open_blob_raw", count_use=False)

    async def _open(self, entry_id: str, operation: str, *, count_use: bool) -> OpenBlob:
        if not is_valid_id(entry_id):
            raise NotFoundError(entry_id)

        attempt = 0
        while True:
            try:
                return await self._open_once(entry_id, operation, count_use=count_use)
            except StorageError as exc:
                if attempt >= SERIALIZATION_RETRIES or not is_serialization_failure(exc.cause):
                    raise
                attempt += 1
                logger.debug("Serialization conflict on %s, retrying %s", entry_id, operation)

    async def _open_once(self, entry_id: str, operation: str, *, count_use: bool) -> OpenBlob:
        now = self._clock()
        reader: BlobReader | None = None
        content_type: str | None = None
        try:
            async with self._transaction(operation) as index:
                if count_use:
                    usable = await self._count_use(index, entry_id, now, operation)
                else:
                    usable = await index.exists(entry_id)
                if usable:
                    reader = await self._open_reader(index, entry_id, operation)
                if reader is not None:
                    content_type = await index.content_type(entry_id)
        except BaseException:
            if reader is not None:
                await reader.aclose()
            raise

        if reader is None:
            raise NotFoundError(entry_id)
        return OpenBlob(entry_id, content_type, reader)

    async def _count_use(
        self, index: MetadataIndex, entry_id: str, now: datetime, operation: str
    ) -> bool:
        """Mark one use, or evict the entry if it can no longer be used."""
        if not await index.is_eligible_for_eviction(entry_id, now):
            if await index.mark_used(entry_id, now):
                return True
        if await index.remove(entry_id):
            logger.debug("Evicted %s on access", entry_id)
            await self._unlink(entry_id, operation)
        return False

    async def _open_reader(
        self, index: MetadataIndex, entry_id: str, operation: str
    ) -> BlobReader | None:
        """Open the blob file, dropping the row if the file is gone."""
        try:
            return await self.blobs.open(entry_id)
        except FileNotFoundError:
            logger.warning("Blob %s missing from storage, removing its index row", entry_id)
            await index.remove(entry_id)
            return None
        except OSError as exc:
            raise StorageError(operation, exc) from exc

    async def remove_blob(self, entry_id: str) -> bool:
        """Delete an entry and its blob.

        Idempotent: removing an absent (or malformed) id returns False.
        If the unlink fails the row is already gone and the orphaned
        file is reported as a StorageError; it is not retried.
        """
        if not is_valid_id(entry_id):
            return False
        async with self._transaction("remove_blob") as index:
            removed = await index.remove(entry_id)
        if removed:
            await self._unlink(entry_id, "remove_blob")
            logger.debug("Removed %s", entry_id)
        return removed

    async def evict_expired(self, now: datetime | None = None) -> list[str]:
        """Delete every expired or exhausted entry and its blob.

        Rows are enumerated and deleted in one transaction; blobs are
        unlinked after commit. An unlink failure is logged and skipped so
        one bad file cannot stall the rest.

        Returns:
            The ids removed from the index.
        """
        now = now or self._clock()
        async with self._transaction("evict_expired") as index:
            expired = await index.expired_ids(now)
            if expired:
                await index.remove_expired(now)

        for entry_id in expired:
            try:
                await self.blobs.delete(entry_id, missing_ok=True)
            except (OSError, ValueError):
                logger.exception("Failed to unlink expired blob %s", entry_id)

        if expired:
            logger.info("Evicted %d expired entries", len(expired))
        return expired

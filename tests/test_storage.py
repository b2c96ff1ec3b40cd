"""Tests for the flat-directory blob store."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from ephemera.errors import BlobTooLargeError
from ephemera.storage import BlobStore, is_valid_id

ENTRY_ID = "0b8f5a8e-9a4c-4f6e-8d3b-6f2a1c9e7d10"


async def _chunks(*parts: bytes) -> AsyncIterator[bytes]:
    for part in parts:
        yield part


class TestIsValidId:
    def test_canonical_uuid(self) -> None:
        assert is_valid_id(ENTRY_ID)

    @pytest.mark.parametrize(
        "candidate",
        [
            "",
            "IAMINVALIDUUID",
            ENTRY_ID.upper(),
            ENTRY_ID.replace("-", ""),
            "{" + ENTRY_ID + "}",
            "../" + ENTRY_ID,
            "meow.txt",
        ],
    )
    def test_rejects_non_canonical(self, candidate: str) -> None:
        assert not is_valid_id(candidate)


class TestBlobStore:
    async def test_write_and_read(self, blob_store: BlobStore) -> None:
        size = await blob_store.write(ENTRY_ID, _chunks(b"hello ", b"world"))

        assert size == 11
        assert (blob_store.root / ENTRY_ID).read_bytes() == b"hello world"

        reader = await blob_store.open(ENTRY_ID)
        try:
            assert reader.size == 11
            assert b"".join([chunk async for chunk in reader.chunks(4)]) == b"hello world"
        finally:
            await reader.aclose()

    async def test_write_refuses_existing_blob(self, blob_store: BlobStore) -> None:
        await blob_store.write(ENTRY_ID, _chunks(b"first"))

        with pytest.raises(FileExistsError):
            await blob_store.write(ENTRY_ID, _chunks(b"second"))

        assert (blob_store.root / ENTRY_ID).read_bytes() == b"first"

    async def test_oversized_write_leaves_nothing(self, blob_store: BlobStore) -> None:
        with pytest.raises(BlobTooLargeError):
            await blob_store.write(ENTRY_ID, _chunks(b"1234", b"5678"), max_size=6)

        assert not await blob_store.exists(ENTRY_ID)

    async def test_open_missing(self, blob_store: BlobStore) -> None:
        with pytest.raises(FileNotFoundError):
            await blob_store.open(ENTRY_ID)

    async def test_delete(self, blob_store: BlobStore) -> None:
        await blob_store.write(ENTRY_ID, _chunks(b"data"))

        assert await blob_store.delete(ENTRY_ID) is True
        assert await blob_store.delete(ENTRY_ID, missing_ok=True) is False
        with pytest.raises(FileNotFoundError):
            await blob_store.delete(ENTRY_ID)

    def test_path_cannot_escape_root(self, blob_store: BlobStore) -> None:
        with pytest.raises(ValueError):
            blob_store.path("../outside")

"""Tests for the command line interface."""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from ephemera.cli import app
from ephemera.config import settings
from ephemera.engine import BlobEngine
from ephemera.errors import StorageError

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_settings(tmp_path: Path, database_url: str, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "database_url", database_url)
    monkeypatch.setattr(settings, "storage_dir", tmp_path / "blobs")


@pytest.fixture
def sample_file(tmp_path: Path) -> Path:
    path = tmp_path / "meow.txt"
    path.write_bytes(b"Meow Meow Meow")
    return path


def _put(*args: str) -> str:
    result = runner.invoke(app, ["put", *args])
    assert result.exit_code == 0, result.output
    return result.stdout.strip()


def test_init_db() -> None:
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0
    assert "Database initialized" in result.stdout


def test_put_and_cat(sample_file: Path) -> None:
    entry_id = _put(str(sample_file))

    result = runner.invoke(app, ["cat", entry_id])
    assert result.exit_code == 0
    assert result.stdout_bytes == b"Meow Meow Meow"


def test_cat_does_not_count_a_use(sample_file: Path) -> None:
    entry_id = _put(str(sample_file), "--max-uses", "1")

    for _ in range(3):
        assert runner.invoke(app, ["cat", entry_id]).exit_code == 0


def test_cat_unknown_id() -> None:
    result = runner.invoke(app, ["cat", "IAMINVALIDUUID"])
    assert result.exit_code == 1


def test_put_rejects_over_limit(sample_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "max_uses", 2)

    result = runner.invoke(app, ["put", str(sample_file), "--max-uses", "3"])
    assert result.exit_code == 1


def test_rm(sample_file: Path) -> None:
    entry_id = _put(str(sample_file))

    result = runner.invoke(app, ["rm", entry_id])
    assert result.exit_code == 0
    assert "Removed" in result.stdout

    result = runner.invoke(app, ["rm", entry_id])
    assert result.exit_code == 0
    assert "Nothing to remove" in result.stdout

    assert runner.invoke(app, ["cat", entry_id]).exit_code == 1


def test_sweep_nothing_to_evict(sample_file: Path) -> None:
    _put(str(sample_file))

    result = runner.invoke(app, ["sweep"])
    assert result.exit_code == 0
    assert "Nothing to evict" in result.stdout


def test_sweep_reports_storage_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    async def failing_evict(self, now=None):
        raise StorageError("evict_expired", OSError("disk I/O error"))

    monkeypatch.setattr(BlobEngine, "evict_expired", failing_evict)

    result = runner.invoke(app, ["sweep"])
    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)


def test_cat_reports_storage_failure(sample_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    entry_id = _put(str(sample_file))

    async def failing_open(self, entry_id):
        raise StorageError("open_blob_raw", OSError("permission denied"))

    monkeypatch.setattr(BlobEngine, "open_blob_raw", failing_open)

    result = runner.invoke(app, ["cat", entry_id])
    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)

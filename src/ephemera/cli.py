"""CLI for Ephemera.

Commands:
    serve              - Run the HTTP server
    init-db            - Create the metadata index table
    put <path>         - Store a local file and print its id
    cat <id>           - Write a blob to stdout without counting a use
    rm <id>            - Remove a blob
    sweep              - Evict expired and used-up entries once
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated

import aiofiles
import typer
from rich.console import Console
from rich.table import Table

from ephemera.config import settings
from ephemera.db import create_engine, create_session_factory, init_db
from ephemera.engine import BlobEngine
from ephemera.errors import EphemeraError, NotFoundError
from ephemera.limits import Limits
from ephemera.storage import CHUNK_SIZE, BlobStore

app = typer.Typer(
    name="ephemera",
    help="Ephemera: ephemeral blob store with use-count and time-based expiry",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine in sync context."""
    return asyncio.run(coro)


@app.callback()
def configure(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
):
    """Configure logging for all commands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def open_engine() -> AsyncIterator[BlobEngine]:
    """Blob engine over the configured database and storage directory."""
    db_engine = create_engine(settings.database_url, echo=settings.database_echo)
    try:
        await init_db(db_engine)
        limits = Limits(
            max_uses=settings.max_uses,
            max_store_secs=settings.max_store_secs,
            max_blob_size=settings.max_blob_size,
        )
        yield BlobEngine(
            BlobStore(settings.storage_dir), create_session_factory(db_engine), limits=limits
        )
    finally:
        await db_engine.dispose()


async def _read_file(path: Path) -> AsyncIterator[bytes]:
    async with aiofiles.open(path, "rb") as f:
        while chunk := await f.read(CHUNK_SIZE):
            yield chunk


@app.command()
def serve(
    host: Annotated[str | None, typer.Option(help="Interface to bind")] = None,
    port: Annotated[int | None, typer.Option(help="Port to listen on")] = None,
):
    """Run the HTTP server."""
    import uvicorn

    uvicorn.run(
        "ephemera.app:app",
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )


@app.command("init-db")
def init_database():
    """Initialize the database schema (creates tables if they don't exist)."""
    async def _init():
        db_engine = create_engine(settings.database_url, echo=settings.database_echo)
        try:
            await init_db(db_engine)
        finally:
            await db_engine.dispose()
        console.print("[green]Database initialized.[/green]")

    run_async(_init())


@app.command()
def put(
    path: Annotated[Path, typer.Argument(help="File to store", exists=True, dir_okay=False)],
    max_uses: Annotated[
        int | None, typer.Option("--max-uses", help="Number of downloads allowed")
    ] = None,
    store_secs: Annotated[
        int | None, typer.Option("--store-secs", help="Seconds to keep the file")
    ] = None,
    content_type: Annotated[
        str | None, typer.Option("--content-type", help="Defaults to a guess from the name")
    ] = None,
):
    """Store a local file and print its entry id."""
    async def _put():
        async with open_engine() as engine:
            uses, expires_at = engine.limits.resolve(max_uses, store_secs, engine.now())
            return await engine.add_blob(
                _read_file(path),
                content_type or mimetypes.guess_type(path.name)[0],
                max_uses=uses,
                expires_at=expires_at,
            )

    try:
        entry_id = run_async(_put())
    except EphemeraError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None
    console.print(entry_id)


@app.command()
def cat(
    entry_id: Annotated[str, typer.Argument(help="Entry ID (UUID)")],
):
    """Write a blob to stdout. Does not count as a use."""
    async def _cat():
        async with open_engine() as engine:
            async with await engine.open_blob_raw(entry_id) as blob:
                async for chunk in blob.chunks():
                    sys.stdout.buffer.write(chunk)
        sys.stdout.buffer.flush()

    try:
        run_async(_cat())
    except NotFoundError:
        err_console.print(f"[red]Error:[/red] Not found: {entry_id}")
        raise typer.Exit(1) from None
    except EphemeraError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


@app.command()
def rm(
    entry_id: Annotated[str, typer.Argument(help="Entry ID (UUID)")],
):
    """Remove a blob and its metadata."""
    async def _rm():
        async with open_engine() as engine:
            return await engine.remove_blob(entry_id)

    try:
        removed = run_async(_rm())
    except EphemeraError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    if removed:
        console.print(f"[green]Removed[/green] {entry_id}")
    else:
        console.print(f"[yellow]Nothing to remove:[/yellow] {entry_id}")


@app.command()
def sweep():
    """Evict expired and used-up entries once."""
    async def _sweep():
        async with open_engine() as engine:
            return await engine.evict_expired()

    try:
        evicted = run_async(_sweep())
    except EphemeraError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    if not evicted:
        console.print("[dim]Nothing to evict.[/dim]")
        return

    table = Table(title=f"Evicted {len(evicted)} entries")
    table.add_column("Entry ID", style="cyan")
    for entry_id in evicted:
        table.add_row(entry_id)
    console.print(table)


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()

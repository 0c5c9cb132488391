"""Typer CLI for the WAL reader."""

from __future__ import annotations

import asyncio
from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.table import Table

from cdc_wal.config.loader import load_reader_config
from cdc_wal.config.models import OffsetStoreKind, ReaderConfig
from cdc_wal.logging_setup import configure_logging
from cdc_wal.lsn import Lsn
from cdc_wal.offsets import FileOffsetStore, InMemoryOffsetStore, OffsetStore
from cdc_wal.position import WalPosition

logger = structlog.get_logger()
console = Console()
app = typer.Typer(name="cdc-wal", help="PostgreSQL WAL reader CLI")


def _load(config_path: str) -> ReaderConfig:
    path = Path(config_path)
    if not path.exists():
        console.print(f"[red]Config file not found: {path}[/red]")
        raise typer.Exit(1)
    return load_reader_config(path)


def parse_position(text: str) -> WalPosition:
    """Parse ``FINAL:LSN`` where FINAL is an LSN, or ``none`` / ``-`` when unknown."""
    final_text, sep, lsn_text = text.partition(":")
    if not sep:
        msg = f"Invalid position '{text}': expected 'FINAL:LSN' (e.g. '0/64:0/69')"
        raise ValueError(msg)
    final_lsn = None
    if final_text.strip().lower() not in ("-", "none"):
        final_lsn = Lsn.from_string(final_text)
    return WalPosition(final_lsn, Lsn.from_string(lsn_text))


def build_offset_store(config: ReaderConfig) -> OffsetStore:
    if config.offsets.kind == OffsetStoreKind.FILE:
        assert config.offsets.path is not None
        return FileOffsetStore(config.offsets.path)
    return InMemoryOffsetStore()


class ConsolePublisher:
    """WalPublisher that prints each event to the console."""

    async def publish(
        self,
        topic: str,
        key: bytes,
        value: bytes,
        ordering_key: str | None = None,
    ) -> None:
        console.print(f"[cyan]{topic}[/cyan] key={key.decode('utf-8')}")
        console.print(f"  {value.decode('utf-8')}")

    async def flush(self) -> None:
        return None

    async def close(self) -> None:
        return None


@app.command()
def validate(
    config_path: str = typer.Argument(..., help="Path to reader YAML"),
) -> None:
    """Validate a reader configuration file."""
    try:
        config = _load(config_path)
    except (ValueError, TypeError) as exc:
        console.print(f"[red]Validation error:[/red] {exc}")
        raise typer.Exit(1) from exc

    console.print(f"[green]Valid[/green] — reader_id={config.reader_id}")
    source = config.source
    console.print(f"  source: {source.host}:{source.port}/{source.database}")
    console.print(f"  tables: {config.source.tables or '(all)'}")
    console.print(
        f"  slot:   {config.wal_reader.slot_name} "
        f"(publication {config.wal_reader.publication_name})"
    )
    console.print(f"  offsets: {config.offsets.kind}")


@app.command()
def compare(
    first: str = typer.Argument(..., help="Position as FINAL:LSN, e.g. 0/64:0/69"),
    second: str = typer.Argument(
        ..., help="Position as FINAL:LSN, 'none' for no final LSN"
    ),
) -> None:
    """Show how two stream positions order against each other."""
    try:
        a, b = parse_position(first), parse_position(second)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc

    table = Table(title=f"{a}  vs  {b}")
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    table.add_row("is_before", str(a.is_before(b)))
    table.add_row("is_before_or_equal", str(a.is_before_or_equal(b)))
    table.add_row("equal", str(a == b))
    if a.final_lsn is None or b.final_lsn is None:
        table.add_row("compared by", "event LSN only")
    else:
        table.add_row("compared by", "final LSN, then event LSN")
    console.print(table)


@app.command()
def run(
    config_path: str = typer.Argument(..., help="Path to reader YAML"),
) -> None:
    """Stream WAL changes and print them to the console."""
    config = _load(config_path)
    configure_logging(config.logging)

    from cdc_wal.reader import WalReader

    console.print(f"[yellow]Starting reader:[/yellow] {config.reader_id}")
    reader = WalReader(config, ConsolePublisher(), build_offset_store(config))
    try:
        asyncio.run(reader.start())
    except KeyboardInterrupt:
        asyncio.run(reader.stop())
        logger.info("cli.interrupted", committed=str(reader.committed))


if __name__ == "__main__":
    app()

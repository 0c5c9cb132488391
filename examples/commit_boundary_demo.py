#!/usr/bin/env python3
"""Offline demo: decode a transaction with a three-table TRUNCATE and watch
the committed offset advance only at commit boundaries.

    python examples/commit_boundary_demo.py
"""

from __future__ import annotations

import struct

from rich.console import Console
from rich.table import Table

from cdc_wal.decoder import PgOutputDecoder
from cdc_wal.offsets import OffsetTracker

console = Console()


def _relation(rel_id: int, table: str) -> bytes:
    return (
        b"R"
        + struct.pack("!I", rel_id)
        + b"public\x00"
        + table.encode()
        + b"\x00\x00"
        + struct.pack("!H", 1)
        + b"\x00id\x00"
        + struct.pack("!II", 23, 0)
    )


def main() -> None:
    decoder = PgOutputDecoder()
    tracker = OffsetTracker()

    frames: list[tuple[bytes, int]] = [
        (_relation(1, "customers"), 0x100),
        (_relation(2, "orders"), 0x100),
        (_relation(3, "invoices"), 0x100),
        (b"B" + struct.pack("!QqI", 0x200, 0, 42), 0x110),
        (b"T" + struct.pack("!IB", 3, 0) + struct.pack("!3I", 1, 2, 3), 0x150),
        (b"C" + struct.pack("!BQQq", 0, 0x200, 0x208, 0), 0x200),
    ]

    messages = []
    for data, lsn in frames:
        for message in decoder.decode(data, lsn):
            tracker.register(message)
            messages.append(message)

    table = Table(title="Processing order")
    table.add_column("Operation", style="cyan")
    table.add_column("Table")
    table.add_column("Position")
    table.add_column("Last for LSN")
    table.add_column("Committed")

    for message in messages:
        advanced = tracker.mark_processed(message.position)
        table.add_row(
            message.operation.value,
            message.table or "",
            str(message.position),
            str(message.is_last_event_for_lsn()),
            str(advanced) if advanced else "[dim]held[/dim]",
        )

    console.print(table)
    console.print(f"Flush LSN: [green]{tracker.flush_lsn}[/green]")


if __name__ == "__main__":
    main()

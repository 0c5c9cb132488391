"""Commit-boundary offset tracking and offset persistence.

The tracker keeps decoded messages in stream order and only advances the
committed offset once every earlier message has been processed and the
message it stops on reported itself as the last event for its LSN.
Advancing on a non-final event of a multi-table TRUNCATE would let the
slot discard WAL that still has undelivered events.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog

from cdc_wal.lsn import Lsn
from cdc_wal.messages import ReplicationMessage
from cdc_wal.position import WalPosition

logger = structlog.get_logger()


@dataclass(slots=True)
class _Pending:
    position: WalPosition
    last_for_lsn: bool
    processed: bool = False


class OffsetTracker:
    """Tracks outstanding positions and computes the flushable offset.

    Not thread-safe: one tracker serves one replication slot on one
    sequential consumer path.
    """

    def __init__(self, committed: WalPosition | None = None) -> None:
        self._pending: deque[_Pending] = deque()
        self._committed = committed
        self._last_registered: WalPosition | None = None

    @property
    def committed(self) -> WalPosition | None:
        """Last position that is safe to acknowledge, if any."""
        return self._committed

    @property
    def flush_lsn(self) -> Lsn:
        """LSN to report as flushed in replication feedback."""
        return self._committed.lsn if self._committed is not None else Lsn.INVALID

    @property
    def outstanding(self) -> int:
        return len(self._pending)

    def register(self, message: ReplicationMessage) -> WalPosition:
        """Record *message* as outstanding and return its position.

        Messages must be registered in stream order.  Order is only checked
        against a previous position of the same framing; a transaction's
        events may carry lower LSNs than a non-transactional message decoded
        before its commit.
        """
        position = message.position
        if position.shares_framing(self._last_registered) and position.is_before(
            self._last_registered
        ):
            msg = (
                f"Position {position} registered after {self._last_registered}; "
                "messages must be registered in stream order"
            )
            raise ValueError(msg)
        self._pending.append(
            _Pending(position=position, last_for_lsn=message.is_last_event_for_lsn())
        )
        self._last_registered = position
        return position

    def mark_processed(self, position: WalPosition) -> WalPosition | None:
        """Mark the oldest unprocessed entry at *position* as processed.

        Returns the new committed position when it advanced, else None.
        Raises KeyError if no unprocessed entry has that position.
        """
        for entry in self._pending:
            if not entry.processed and entry.position == position:
                entry.processed = True
                break
        else:
            msg = f"No outstanding event at position {position}"
            raise KeyError(msg)

        return self._advance()

    def _advance(self) -> WalPosition | None:
        advanced: WalPosition | None = None
        while self._pending and self._pending[0].processed:
            entry = self._pending.popleft()
            if entry.last_for_lsn:
                advanced = entry.position

        if advanced is None:
            return None
        self._committed = advanced
        logger.debug("offsets.advanced", position=str(advanced))
        return advanced


@runtime_checkable
class OffsetStore(Protocol):
    """Persists the committed position of a replication slot."""

    def load(self, slot_name: str) -> WalPosition | None:
        """Return the stored position for *slot_name*, or None."""
        ...

    def save(self, slot_name: str, position: WalPosition) -> None:
        """Store *position* as the committed offset for *slot_name*."""
        ...


class InMemoryOffsetStore:
    """Process-local offset store, lost on restart."""

    def __init__(self) -> None:
        self._offsets: dict[str, WalPosition] = {}

    def load(self, slot_name: str) -> WalPosition | None:
        return self._offsets.get(slot_name)

    def save(self, slot_name: str, position: WalPosition) -> None:
        self._offsets[slot_name] = position


class FileOffsetStore:
    """Stores offsets for all slots in a single JSON document.

    Layout::

        {"<slot_name>": {"final_lsn": "0/16B3748", "lsn": "0/16B3790"}}
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def _read(self) -> dict[str, dict[str, str | None]]:
        if not self._path.exists():
            return {}
        with self._path.open() as f:
            return json.load(f)  # type: ignore[no-any-return]

    def load(self, slot_name: str) -> WalPosition | None:
        try:
            data = self._read().get(slot_name)
            if data is not None:
                return WalPosition.from_offset_dict(data)
        except (OSError, ValueError):
            logger.exception(
                "offsets.load_failed", slot=slot_name, path=str(self._path)
            )
        return None

    def save(self, slot_name: str, position: WalPosition) -> None:
        try:
            offsets = self._read()
            offsets[slot_name] = position.to_offset()
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp.parent.mkdir(parents=True, exist_ok=True)
            with tmp.open("w") as f:
                json.dump(offsets, f, indent=2, sort_keys=True)
            tmp.replace(self._path)
        except (OSError, ValueError):
            logger.exception(
                "offsets.save_failed",
                slot=slot_name,
                path=str(self._path),
                position=str(position),
            )

"""Decoded logical replication messages.

Each variant carries its LSN context and answers
:meth:`ReplicationMessage.is_last_event_for_lsn`, the signal an offset
tracker uses to decide when a WAL position may be acknowledged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from cdc_wal.lsn import Lsn
from cdc_wal.position import WalPosition


class Operation(StrEnum):
    """Kinds of message emitted by the decoder."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    BEGIN = "begin"
    COMMIT = "commit"
    TRUNCATE = "truncate"
    MESSAGE = "message"


ROW_OPERATIONS = frozenset({Operation.INSERT, Operation.UPDATE, Operation.DELETE})


@dataclass(frozen=True, slots=True)
class ReplicationMessage:
    """Common fields shared by every decoded message.

    ``table`` is the schema-qualified table name, or None for transaction
    framing and logical decoding messages.
    """

    operation: Operation
    table: str | None
    commit_time: datetime
    transaction_id: int | None
    lsn: Lsn
    final_lsn: Lsn | None

    @property
    def position(self) -> WalPosition:
        return WalPosition(self.final_lsn, self.lsn)

    @property
    def is_transactional(self) -> bool:
        return self.final_lsn is not None

    def is_last_event_for_lsn(self) -> bool:
        """Whether no further message will carry this message's LSN."""
        return True


@dataclass(frozen=True, slots=True)
class BeginMessage(ReplicationMessage):
    pass


@dataclass(frozen=True, slots=True)
class CommitMessage(ReplicationMessage):
    end_lsn: Lsn | None = None


@dataclass(frozen=True, slots=True)
class RowMessage(ReplicationMessage):
    """INSERT, UPDATE or DELETE of a single row."""

    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if self.operation not in ROW_OPERATIONS:
            msg = f"RowMessage cannot carry operation '{self.operation}'"
            raise ValueError(msg)


@dataclass(frozen=True, slots=True)
class TruncateMessage(ReplicationMessage):
    """Truncation of one table.

    A single TRUNCATE statement over several tables is written as one WAL
    record and decoded into one message per table, all sharing an LSN.
    Only the final one has ``last_table_in_truncate`` set.
    """

    last_table_in_truncate: bool = True
    cascade: bool = False
    restart_identity: bool = False

    def is_last_event_for_lsn(self) -> bool:
        return self.last_table_in_truncate


@dataclass(frozen=True, slots=True)
class LogicalDecodingMessage(ReplicationMessage):
    """Payload written with ``pg_logical_emit_message``."""

    prefix: str = ""
    content: bytes = field(default=b"", repr=False)

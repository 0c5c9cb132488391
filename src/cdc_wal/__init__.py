"""Ordering and commit-boundary core for PostgreSQL logical replication."""

from cdc_wal.lsn import Lsn
from cdc_wal.messages import (
    BeginMessage,
    CommitMessage,
    LogicalDecodingMessage,
    Operation,
    ReplicationMessage,
    RowMessage,
    TruncateMessage,
)
from cdc_wal.position import WalPosition

__all__ = [
    "BeginMessage",
    "CommitMessage",
    "LogicalDecodingMessage",
    "Lsn",
    "Operation",
    "ReplicationMessage",
    "RowMessage",
    "TruncateMessage",
    "WalPosition",
]

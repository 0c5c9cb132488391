"""pgoutput binary protocol decoder.

Decodes the pgoutput logical replication plugin wire format into
:mod:`cdc_wal.messages` variants.  Handles message types:

- B (Begin)          — transaction start, carries the final (commit) LSN
- C (Commit)         — transaction commit
- R (Relation)       — table schema definition
- I (Insert)         — row insert
- U (Update)         — row update
- D (Delete)         — row delete
- T (Truncate)       — one or more tables truncated by a single statement
- M (Message)        — logical decoding message

Reference: https://www.postgresql.org/docs/current/protocol-logicalrep-message-formats.html
"""

from __future__ import annotations

import struct
from collections.abc import Collection
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

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

logger = structlog.get_logger()

# PostgreSQL epoch: 2000-01-01 00:00:00 UTC
_PG_EPOCH = datetime(2000, 1, 1, tzinfo=UTC)
_PG_EPOCH_TS = _PG_EPOCH.timestamp()

_TRUNCATE_CASCADE = 1
_TRUNCATE_RESTART_IDENTITY = 2


class DecodeError(ValueError):
    """Raised when a pgoutput frame cannot be decoded."""


@dataclass
class _RelationInfo:
    """Cached relation (table) metadata from Relation messages."""

    schema: str
    table: str
    columns: list[tuple[str, int]]  # (name, type_oid)

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}"


class PgOutputDecoder:
    """Stateful decoder for the pgoutput binary wire protocol.

    Maintains a relation cache so that row and truncate messages can resolve
    table and column names, plus the framing of the open transaction so that
    every message carries its final LSN.

    Args:
        tables: Optional schema-qualified table names to keep.  Row and
            truncate messages for other tables are dropped.
        include_truncate: When False, Truncate messages decode to nothing.
    """

    def __init__(
        self,
        tables: Collection[str] | None = None,
        *,
        include_truncate: bool = True,
    ) -> None:
        self._relations: dict[int, _RelationInfo] = {}
        self._tables = frozenset(tables) if tables else None
        self._include_truncate = include_truncate
        self._final_lsn: Lsn | None = None
        self._commit_time: datetime = _PG_EPOCH
        self._xid: int | None = None

    @property
    def in_transaction(self) -> bool:
        return self._final_lsn is not None

    def decode(
        self, data: bytes, lsn: Lsn | int | None = None
    ) -> list[ReplicationMessage]:
        """Decode a pgoutput message, returning zero or more messages.

        *lsn* is the WAL start of the frame carrying *data*.  When omitted,
        messages fall back to the final LSN of the open transaction.

        Relation/Type/Origin messages return an empty list (metadata only).
        Truncate messages return one message per kept table.
        """
        if not data:
            return []

        msg_type = chr(data[0])
        payload = data[1:]
        frame_lsn = Lsn.coerce(lsn) if lsn is not None else None

        try:
            if msg_type == "B":
                return [self._decode_begin(payload, frame_lsn)]
            elif msg_type == "C":
                return [self._decode_commit(payload)]
            elif msg_type == "R":
                self._decode_relation(payload)
                return []
            elif msg_type == "I":
                return self._decode_insert(payload, frame_lsn)
            elif msg_type == "U":
                return self._decode_update(payload, frame_lsn)
            elif msg_type == "D":
                return self._decode_delete(payload, frame_lsn)
            elif msg_type == "T":
                return self._decode_truncate(payload, frame_lsn)
            elif msg_type == "M":
                return [self._decode_message(payload, frame_lsn)]
            else:
                logger.debug("decoder.message_skipped", msg_type=msg_type)
                return []
        except (struct.error, IndexError, UnicodeDecodeError) as exc:
            msg = f"Malformed pgoutput '{msg_type}' message: {exc}"
            raise DecodeError(msg) from exc

    # -- transaction framing -------------------------------------------------

    def _decode_begin(self, data: bytes, frame_lsn: Lsn | None) -> BeginMessage:
        """Parse Begin message: final LSN (8) + commit timestamp (8) + xid (4)."""
        final_lsn, ts_us, xid = struct.unpack_from("!QqI", data, 0)
        self._final_lsn = Lsn(final_lsn)
        self._commit_time = self._to_datetime(ts_us)
        self._xid = xid
        return BeginMessage(
            operation=Operation.BEGIN,
            table=None,
            commit_time=self._commit_time,
            transaction_id=xid,
            lsn=self._frame_or(frame_lsn, self._final_lsn),
            final_lsn=self._final_lsn,
        )

    def _decode_commit(self, data: bytes) -> CommitMessage:
        """Parse Commit message: flags (1) + commit LSN (8) + end LSN (8) + timestamp (8)."""
        _flags, commit_lsn, end_lsn, ts_us = struct.unpack_from("!BQQq", data, 0)
        message = CommitMessage(
            operation=Operation.COMMIT,
            table=None,
            commit_time=self._to_datetime(ts_us),
            transaction_id=self._xid,
            lsn=Lsn(commit_lsn),
            final_lsn=self._final_lsn or Lsn(commit_lsn),
            end_lsn=Lsn(end_lsn),
        )
        self._final_lsn = None
        self._xid = None
        return message

    # -- schema --------------------------------------------------------------

    def _decode_relation(self, data: bytes) -> None:
        """Parse Relation message: rel_id + namespace + name + columns."""
        offset = 0
        rel_id = struct.unpack_from("!I", data, offset)[0]
        offset += 4

        namespace, offset = self._read_string(data, offset)
        table, offset = self._read_string(data, offset)

        # replica identity (1 byte)
        offset += 1

        n_cols = struct.unpack_from("!H", data, offset)[0]
        offset += 2

        columns: list[tuple[str, int]] = []
        for _ in range(n_cols):
            # flags (1 byte)
            offset += 1
            col_name, offset = self._read_string(data, offset)
            type_oid = struct.unpack_from("!I", data, offset)[0]
            # type oid (4) + type modifier (4)
            offset += 8
            columns.append((col_name, type_oid))

        self._relations[rel_id] = _RelationInfo(
            schema=namespace, table=table, columns=columns
        )

    # -- row changes ---------------------------------------------------------

    def _decode_insert(self, data: bytes, frame_lsn: Lsn | None) -> list[RowMessage]:
        """Parse Insert message: rel_id (4) + 'N' + TupleData."""
        rel = self._relation(struct.unpack_from("!I", data, 0)[0])
        if not self._wanted(rel):
            return []
        # Skip rel_id (4) + 'N' marker (1)
        row, _ = self._decode_tuple_data(data, 5, rel.columns)
        return [self._row(Operation.INSERT, rel, frame_lsn, before=None, after=row)]

    def _decode_update(self, data: bytes, frame_lsn: Lsn | None) -> list[RowMessage]:
        """Parse Update message: rel_id (4) + optional old tuple + 'N' + new tuple."""
        rel = self._relation(struct.unpack_from("!I", data, 0)[0])
        if not self._wanted(rel):
            return []
        offset = 4

        before = None
        # Old tuple present if marker is 'K' (key) or 'O' (old)
        if chr(data[offset]) in ("K", "O"):
            before, offset = self._decode_tuple_data(data, offset + 1, rel.columns)
        offset += 1  # skip 'N'

        after, _ = self._decode_tuple_data(data, offset, rel.columns)
        return [self._row(Operation.UPDATE, rel, frame_lsn, before=before, after=after)]

    def _decode_delete(self, data: bytes, frame_lsn: Lsn | None) -> list[RowMessage]:
        """Parse Delete message: rel_id (4) + 'K'|'O' + TupleData."""
        rel = self._relation(struct.unpack_from("!I", data, 0)[0])
        if not self._wanted(rel):
            return []
        before, _ = self._decode_tuple_data(data, 5, rel.columns)
        return [self._row(Operation.DELETE, rel, frame_lsn, before=before, after=None)]

    def _row(
        self,
        operation: Operation,
        rel: _RelationInfo,
        frame_lsn: Lsn | None,
        *,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> RowMessage:
        return RowMessage(
            operation=operation,
            table=rel.qualified_name,
            commit_time=self._commit_time,
            transaction_id=self._xid,
            lsn=self._event_lsn(frame_lsn),
            final_lsn=self._final_lsn,
            before=before,
            after=after,
        )

    # -- truncate ------------------------------------------------------------

    def _decode_truncate(
        self, data: bytes, frame_lsn: Lsn | None
    ) -> list[TruncateMessage]:
        """Parse Truncate message: n_relations (4) + options (1) + rel_ids (4 each).

        Every emitted message shares the frame LSN; only the last one is
        flagged as the last event for that LSN.
        """
        n_relations, options = struct.unpack_from("!IB", data, 0)
        rel_ids = struct.unpack_from(f"!{n_relations}I", data, 5)

        if not self._include_truncate:
            logger.debug("decoder.truncate_skipped", relations=n_relations)
            return []

        kept = [rel for rel in map(self._relation, rel_ids) if self._wanted(rel)]
        lsn = self._event_lsn(frame_lsn)
        last_index = len(kept) - 1

        return [
            TruncateMessage(
                operation=Operation.TRUNCATE,
                table=rel.qualified_name,
                commit_time=self._commit_time,
                transaction_id=self._xid,
                lsn=lsn,
                final_lsn=self._final_lsn,
                last_table_in_truncate=index == last_index,
                cascade=bool(options & _TRUNCATE_CASCADE),
                restart_identity=bool(options & _TRUNCATE_RESTART_IDENTITY),
            )
            for index, rel in enumerate(kept)
        ]

    # -- logical decoding messages -------------------------------------------

    def _decode_message(
        self, data: bytes, frame_lsn: Lsn | None
    ) -> LogicalDecodingMessage:
        """Parse Message: flags (1) + LSN (8) + prefix + length (4) + content."""
        flags, message_lsn = struct.unpack_from("!BQ", data, 0)
        prefix, offset = self._read_string(data, 9)
        length = struct.unpack_from("!I", data, offset)[0]
        offset += 4
        content = data[offset : offset + length]
        if len(content) != length:
            msg = f"expected {length} content bytes, got {len(content)}"
            raise struct.error(msg)

        transactional = bool(flags & 1)
        return LogicalDecodingMessage(
            operation=Operation.MESSAGE,
            table=None,
            commit_time=self._commit_time if transactional else _PG_EPOCH,
            transaction_id=self._xid if transactional else None,
            lsn=self._frame_or(frame_lsn, Lsn(message_lsn)),
            final_lsn=self._final_lsn if transactional else None,
            prefix=prefix,
            content=bytes(content),
        )

    # -- helpers -------------------------------------------------------------

    def _relation(self, rel_id: int) -> _RelationInfo:
        try:
            return self._relations[rel_id]
        except KeyError:
            msg = f"Unknown relation id {rel_id}: no Relation message received"
            raise DecodeError(msg) from None

    def _wanted(self, rel: _RelationInfo) -> bool:
        return self._tables is None or rel.qualified_name in self._tables

    @staticmethod
    def _frame_or(frame_lsn: Lsn | None, fallback: Lsn | None) -> Lsn | None:
        """The frame's WAL start, or *fallback* when it is absent or invalid."""
        if frame_lsn is not None and frame_lsn.is_valid:
            return frame_lsn
        return fallback

    def _event_lsn(self, frame_lsn: Lsn | None) -> Lsn:
        lsn = self._frame_or(frame_lsn, self._final_lsn)
        if lsn is None:
            msg = "Cannot determine event LSN outside a transaction without a frame LSN"
            raise DecodeError(msg)
        return lsn

    def _decode_tuple_data(
        self, data: bytes, start: int, columns: list[tuple[str, int]]
    ) -> tuple[dict[str, Any], int]:
        """Decode TupleData, returning (dict, new_offset)."""
        offset = start
        n_cols = struct.unpack_from("!H", data, offset)[0]
        offset += 2

        row: dict[str, Any] = {}
        for i in range(n_cols):
            col_type = chr(data[offset])
            offset += 1

            col_name = columns[i][0] if i < len(columns) else f"col_{i}"

            if col_type == "t":
                # Text value
                val_len = struct.unpack_from("!I", data, offset)[0]
                offset += 4
                row[col_name] = data[offset : offset + val_len].decode("utf-8")
                offset += val_len
            else:
                # 'n' NULL, 'u' unchanged TOASTed value
                row[col_name] = None

        return row, offset

    @staticmethod
    def _to_datetime(ts_us: int) -> datetime:
        return datetime.fromtimestamp(_PG_EPOCH_TS + ts_us / 1_000_000, tz=UTC)

    @staticmethod
    def _read_string(data: bytes, offset: int) -> tuple[str, int]:
        """Read a null-terminated string from *data* at *offset*."""
        try:
            end = data.index(0, offset)
        except ValueError:
            msg = "unterminated string"
            raise struct.error(msg) from None
        return data[offset:end].decode("utf-8"), end + 1

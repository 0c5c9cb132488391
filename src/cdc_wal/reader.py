"""Core WAL reader — async logical replication stream consumer.

Connects to PostgreSQL via the streaming replication protocol, decodes
pgoutput messages, publishes them via a WalPublisher implementation, and
acknowledges WAL back to the server only up to the commit boundary computed
by :class:`~cdc_wal.offsets.OffsetTracker`.

Includes automatic reconnection with exponential backoff on connection loss.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import structlog

from cdc_wal.config.models import ReaderConfig
from cdc_wal.decoder import PgOutputDecoder
from cdc_wal.lsn import Lsn
from cdc_wal.messages import (
    LogicalDecodingMessage,
    ReplicationMessage,
    RowMessage,
    TruncateMessage,
)
from cdc_wal.offsets import InMemoryOffsetStore, OffsetStore, OffsetTracker
from cdc_wal.position import WalPosition
from cdc_wal.publisher import WalPublisher, route
from cdc_wal.slot_manager import SlotManager

logger = structlog.get_logger()

_BACKOFF_BASE = 1.0
_BACKOFF_CAP = 60.0


class WalReader:
    """Reads PostgreSQL WAL via logical replication and publishes events.

    Lifecycle:
        1. Ensure publication + slot exist (via SlotManager)
        2. Resume from the stored offset, or the slot's confirmed flush LSN
        3. Open streaming replication connection
        4. Decode pgoutput messages and register their positions
        5. Publish and flush each batch, then mark its positions processed
        6. Persist the committed offset and confirm its LSN to PostgreSQL

    On connection loss, automatically reconnects with exponential backoff
    (1s → 2s → 4s → ... → 60s cap).  Events after the committed offset are
    redelivered by the server, so delivery is at-least-once.
    """

    def __init__(
        self,
        config: ReaderConfig,
        publisher: WalPublisher,
        offset_store: OffsetStore | None = None,
    ) -> None:
        self._config = config
        self._wal_config = config.wal_reader
        self._publisher = publisher
        self._offset_store = offset_store or InMemoryOffsetStore()
        self._running = False
        self._tracker = OffsetTracker()
        self._last_feedback_lsn = 0

        self._dsn = config.source.dsn()
        self._slot_manager = SlotManager(
            dsn=self._dsn,
            slot_name=self._wal_config.slot_name,
            publication_name=self._wal_config.publication_name,
        )

    @property
    def committed(self) -> WalPosition | None:
        return self._tracker.committed

    async def start(self) -> None:
        """Start the WAL reader loop with automatic reconnection."""
        self._running = True

        await self._slot_manager.ensure_publication(self._config.source.tables)
        await self._slot_manager.ensure_slot()

        logger.info(
            "wal_reader.starting",
            slot=self._wal_config.slot_name,
            publication=self._wal_config.publication_name,
            resume_from=str(self._offset_store.load(self._wal_config.slot_name)),
        )

        max_retries = self._wal_config.max_retries
        attempt = 0
        backoff = _BACKOFF_BASE

        while self._running:
            try:
                await self._stream_changes()
                break
            except Exception:
                if not self._running:
                    break
                attempt += 1
                if max_retries > 0 and attempt >= max_retries:
                    logger.error(
                        "wal_reader.max_retries_exceeded",
                        max_retries=max_retries,
                    )
                    raise
                logger.warning(
                    "wal_reader.connection_lost",
                    attempt=attempt,
                    backoff_seconds=backoff,
                    exc_info=True,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _BACKOFF_CAP)

    async def _resume_lsn(self) -> Lsn:
        stored = self._offset_store.load(self._wal_config.slot_name)
        if stored is not None:
            return stored.lsn
        return await self._slot_manager.confirmed_flush_lsn() or Lsn.INVALID

    def _reset_for_connection(self) -> PgOutputDecoder:
        """Fresh decoder and tracker per connection; the server resends Relation messages."""
        self._tracker = OffsetTracker(
            committed=self._offset_store.load(self._wal_config.slot_name)
        )
        return PgOutputDecoder(
            self._config.source.tables,
            include_truncate=not self._wal_config.skip_truncate,
        )

    def _start_replication_command(self, start_lsn: Lsn) -> str:
        options = [
            "proto_version '1'",
            f"publication_names '{self._wal_config.publication_name}'",
        ]
        if self._wal_config.messages:
            options.append("messages 'true'")
        return (
            f"START_REPLICATION SLOT {self._wal_config.slot_name} "
            f"LOGICAL {start_lsn} ({', '.join(options)})"
        )

    async def _stream_changes(self) -> None:
        """Open a replication connection and stream WAL changes."""
        import psycopg

        decoder = self._reset_for_connection()
        start_lsn = await self._resume_lsn()

        conn = await psycopg.AsyncConnection.connect(self._dsn, autocommit=True)

        status_task: asyncio.Task[None] | None = None
        try:
            cursor = conn.cursor()
            await cursor.execute(self._start_replication_command(start_lsn))
            logger.info(
                "wal_reader.streaming",
                slot=self._wal_config.slot_name,
                start_lsn=str(start_lsn),
            )
            status_task = asyncio.create_task(self._status_loop(cursor))

            batch: list[ReplicationMessage] = []
            loop = asyncio.get_running_loop()
            last_flush_time = loop.time()

            async for msg in cursor:
                if not self._running:
                    break

                data = msg.payload if hasattr(msg, "payload") else bytes(msg)
                if isinstance(data, memoryview):
                    data = bytes(data)
                batch.extend(self._ingest(decoder, data, getattr(msg, "data_start", None)))

                now = loop.time()
                if (
                    len(batch) >= self._wal_config.batch_size
                    or (now - last_flush_time) >= self._wal_config.batch_timeout_seconds
                ):
                    if await self._process_batch(batch) is not None:
                        self._send_feedback(cursor)
                    batch.clear()
                    last_flush_time = now

            if batch:
                if await self._process_batch(batch) is not None:
                    self._send_feedback(cursor)

        finally:
            if status_task is not None:
                status_task.cancel()
            await conn.close()
            logger.info("wal_reader.stopped", committed=str(self._tracker.committed))

    def _ingest(
        self,
        decoder: PgOutputDecoder,
        data: bytes,
        frame_lsn: Lsn | int | None,
    ) -> list[ReplicationMessage]:
        """Decode one frame and register every new message with the tracker.

        Messages at or before the committed offset were already delivered
        before a restart and are dropped.  A committed non-transactional
        message says nothing about transactions that commit after it, so
        only positions of the same framing are compared.
        """
        committed = self._tracker.committed
        accepted: list[ReplicationMessage] = []
        for message in decoder.decode(data, frame_lsn):
            position = message.position
            if position.shares_framing(committed) and position.is_before_or_equal(
                committed
            ):
                logger.debug(
                    "wal_reader.skip_processed",
                    position=str(message.position),
                    committed=str(committed),
                )
                continue
            self._tracker.register(message)
            accepted.append(message)
        return accepted

    async def _process_batch(
        self, batch: list[ReplicationMessage]
    ) -> WalPosition | None:
        """Publish and flush *batch*, then advance and persist the committed offset.

        Returns the new committed position, or None if it did not move.
        """
        for message in batch:
            await self._publish(message)
        await self._publisher.flush()

        advanced: WalPosition | None = None
        for message in batch:
            advanced = self._tracker.mark_processed(message.position) or advanced

        if advanced is not None:
            self._offset_store.save(self._wal_config.slot_name, advanced)
            logger.debug(
                "wal_reader.offset_committed",
                position=str(advanced),
                outstanding=self._tracker.outstanding,
            )
        return advanced

    def _send_feedback(self, cursor: Any, *, force: bool = False) -> None:
        """Confirm the committed LSN to PostgreSQL.

        The reported LSN never moves backwards.  Without *force* an update is
        only sent when it has advanced since the last one.
        """
        flush_lsn = max(int(self._tracker.flush_lsn), self._last_feedback_lsn)
        if flush_lsn <= 0:
            return
        if flush_lsn == self._last_feedback_lsn and not force:
            return
        try:
            cursor.send_feedback(flush_lsn=flush_lsn)
        except AttributeError:
            logger.warning("wal_reader.feedback_unsupported", flush_lsn=flush_lsn)
            return
        self._last_feedback_lsn = flush_lsn

    async def _status_loop(self, cursor: Any) -> None:
        """Send a standby status update every ``status_interval_seconds``.

        Keeps an idle stream's slot confirmed even when no batch completes.
        """
        interval = self._wal_config.status_interval_seconds
        while self._running:
            await asyncio.sleep(interval)
            self._send_feedback(cursor, force=True)

    async def _publish(self, message: ReplicationMessage) -> None:
        """Publish a data-carrying message; transaction framing is not forwarded."""
        target = route(self._config.topic_prefix, message)
        if target is None:
            return

        await self._publisher.publish(
            topic=target.topic,
            key=self._build_key(message),
            value=self._serialize_message(message),
            ordering_key=target.ordering_key,
        )

    def _build_key(self, message: ReplicationMessage) -> bytes:
        """Build a message key from the row image, or the table for truncates."""
        if isinstance(message, RowMessage):
            source: Any = message.after or message.before or {}
        elif isinstance(message, LogicalDecodingMessage):
            source = {"prefix": message.prefix}
        else:
            source = {"table": message.table}
        return json.dumps(source, default=str, sort_keys=True).encode("utf-8")

    def _serialize_message(self, message: ReplicationMessage) -> bytes:
        """Serialize a message to JSON bytes."""
        payload: dict[str, Any] = {
            "operation": message.operation.value,
            "table": message.table,
            "lsn": str(message.lsn),
            "final_lsn": str(message.final_lsn) if message.final_lsn else None,
            "transaction_id": message.transaction_id,
            "timestamp": message.commit_time.isoformat(),
        }
        if isinstance(message, RowMessage):
            if message.before is not None:
                payload["before"] = message.before
            if message.after is not None:
                payload["after"] = message.after
        elif isinstance(message, TruncateMessage):
            payload["cascade"] = message.cascade
            payload["restart_identity"] = message.restart_identity
        elif isinstance(message, LogicalDecodingMessage):
            payload["prefix"] = message.prefix
            payload["content"] = message.content.decode("utf-8", errors="replace")
        return json.dumps(payload, default=str).encode("utf-8")

    async def stop(self) -> None:
        """Signal the WAL reader to stop."""
        self._running = False
        await self._publisher.close()

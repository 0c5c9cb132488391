"""Replication slot and publication lifecycle management."""

from __future__ import annotations

import structlog

from cdc_wal.lsn import Lsn

logger = structlog.get_logger()


class SlotManager:
    """Creates and inspects the pgoutput slot and publication a reader streams from.

    Uses psycopg3 async connections; each call opens a short-lived
    connection so it can run before the replication connection exists.
    """

    def __init__(
        self,
        dsn: str,
        slot_name: str = "cdc_slot",
        publication_name: str = "cdc_publication",
    ) -> None:
        self._dsn = dsn
        self._slot_name = slot_name
        self._publication_name = publication_name

    async def ensure_publication(self, tables: list[str]) -> None:
        """Create the publication if missing.

        Args:
            tables: Schema-qualified table names.  Empty publishes all tables.
        """
        import psycopg

        async with await psycopg.AsyncConnection.connect(
            self._dsn, autocommit=True
        ) as conn:
            cur = await conn.execute(
                "SELECT 1 FROM pg_publication WHERE pubname = %s",
                (self._publication_name,),
            )
            if await cur.fetchone() is not None:
                logger.info("wal.publication_exists", name=self._publication_name)
                return

            target = f"TABLE {', '.join(tables)}" if tables else "ALL TABLES"
            await conn.execute(
                f"CREATE PUBLICATION {self._publication_name} FOR {target}"  # noqa: S608
            )
            logger.info(
                "wal.publication_created",
                name=self._publication_name,
                tables=tables or "all",
            )

    async def ensure_slot(self) -> None:
        """Create the logical replication slot if missing."""
        import psycopg

        async with await psycopg.AsyncConnection.connect(
            self._dsn, autocommit=True
        ) as conn:
            cur = await conn.execute(
                "SELECT 1 FROM pg_replication_slots WHERE slot_name = %s",
                (self._slot_name,),
            )
            if await cur.fetchone() is not None:
                logger.info("wal.slot_exists", name=self._slot_name)
                return

            await conn.execute(
                "SELECT pg_create_logical_replication_slot(%s, 'pgoutput')",
                (self._slot_name,),
            )
            logger.info("wal.slot_created", name=self._slot_name)

    async def confirmed_flush_lsn(self) -> Lsn | None:
        """Return the LSN the server last recorded as flushed for the slot."""
        import psycopg

        async with await psycopg.AsyncConnection.connect(
            self._dsn, autocommit=True
        ) as conn:
            cur = await conn.execute(
                "SELECT confirmed_flush_lsn::text FROM pg_replication_slots "
                "WHERE slot_name = %s",
                (self._slot_name,),
            )
            row = await cur.fetchone()

        if row is None or row[0] is None:
            return None
        return Lsn.from_string(row[0])

"""Downstream delivery of decoded WAL events.

Row and truncate events go to one topic per table, logical decoding
messages share a single ``<prefix>._messages`` topic.  Transaction framing
(Begin/Commit) only drives offsets and is never published.
"""

from __future__ import annotations

from typing import NamedTuple, Protocol, runtime_checkable

from cdc_wal.messages import (
    LogicalDecodingMessage,
    ReplicationMessage,
    RowMessage,
    TruncateMessage,
)

MESSAGES_TOPIC = "_messages"


class Route(NamedTuple):
    topic: str
    ordering_key: str


def route(topic_prefix: str, message: ReplicationMessage) -> Route | None:
    """Topic and ordering key for *message*, or None if it is not published."""
    if isinstance(message, LogicalDecodingMessage):
        return Route(f"{topic_prefix}.{MESSAGES_TOPIC}", message.prefix)
    if isinstance(message, RowMessage | TruncateMessage) and message.table:
        return Route(f"{topic_prefix}.{message.table}", message.table)
    return None


@runtime_checkable
class WalPublisher(Protocol):
    """Transport the reader hands serialized events to.

    The reader marks a batch processed, and may acknowledge its LSN to
    PostgreSQL, as soon as :meth:`flush` returns.  ``flush`` must therefore
    not return while any published event is still buffered.
    """

    async def publish(
        self,
        topic: str,
        key: bytes,
        value: bytes,
        ordering_key: str | None = None,
    ) -> None: ...

    async def flush(self) -> None: ...

    async def close(self) -> None: ...

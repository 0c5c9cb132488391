"""Unit tests for topic routing of decoded WAL events."""

from __future__ import annotations

from datetime import UTC, datetime

from cdc_wal.lsn import Lsn
from cdc_wal.messages import (
    BeginMessage,
    LogicalDecodingMessage,
    Operation,
    RowMessage,
    TruncateMessage,
)
from cdc_wal.publisher import Route, route

TS = datetime(2025, 1, 1, tzinfo=UTC)


class TestRoute:
    def test_row_goes_to_table_topic(self):
        msg = RowMessage(Operation.DELETE, "public.users", TS, 1, Lsn(5), Lsn(9))
        assert route("cdc", msg) == Route("cdc.public.users", "public.users")

    def test_truncate_goes_to_table_topic(self):
        msg = TruncateMessage(Operation.TRUNCATE, "public.a", TS, 1, Lsn(5), Lsn(9))
        assert route("orders", msg).topic == "orders.public.a"

    def test_logical_message_keyed_by_prefix(self):
        msg = LogicalDecodingMessage(
            Operation.MESSAGE, None, TS, None, Lsn(5), None, prefix="audit"
        )
        assert route("cdc", msg) == Route("cdc._messages", "audit")

    def test_framing_not_routed(self):
        msg = BeginMessage(Operation.BEGIN, None, TS, 1, Lsn(5), Lsn(9))
        assert route("cdc", msg) is None

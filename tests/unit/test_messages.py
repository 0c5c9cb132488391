"""Unit tests for replication message variants and the last-event signal."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from cdc_wal.lsn import Lsn
from cdc_wal.messages import (
    BeginMessage,
    CommitMessage,
    LogicalDecodingMessage,
    Operation,
    RowMessage,
    TruncateMessage,
)
from cdc_wal.position import WalPosition

TS = datetime(2025, 1, 1, tzinfo=UTC)


def _truncate(table: str, last: bool) -> TruncateMessage:
    return TruncateMessage(
        operation=Operation.TRUNCATE,
        table=table,
        commit_time=TS,
        transaction_id=7,
        lsn=Lsn(500),
        final_lsn=Lsn(600),
        last_table_in_truncate=last,
    )


class TestLastEventForLsn:
    @pytest.mark.parametrize(
        "operation", [Operation.INSERT, Operation.UPDATE, Operation.DELETE]
    )
    def test_row_messages_are_always_last(self, operation: Operation):
        msg = RowMessage(
            operation=operation,
            table="public.users",
            commit_time=TS,
            transaction_id=1,
            lsn=Lsn(10),
            final_lsn=Lsn(20),
            after={"id": "1"},
        )
        assert msg.is_last_event_for_lsn() is True

    def test_begin_and_commit_are_always_last(self):
        begin = BeginMessage(Operation.BEGIN, None, TS, 1, Lsn(10), Lsn(20))
        commit = CommitMessage(Operation.COMMIT, None, TS, 1, Lsn(20), Lsn(20))
        assert begin.is_last_event_for_lsn() is True
        assert commit.is_last_event_for_lsn() is True

    def test_logical_message_is_always_last(self):
        msg = LogicalDecodingMessage(
            Operation.MESSAGE, None, TS, None, Lsn(10), None, prefix="app"
        )
        assert msg.is_last_event_for_lsn() is True

    def test_single_table_truncate_is_last(self):
        assert _truncate("public.a", last=True).is_last_event_for_lsn() is True

    def test_truncate_reports_its_flag(self):
        assert _truncate("public.a", last=False).is_last_event_for_lsn() is False

    def test_three_table_truncate_only_last_flagged(self):
        events = [
            _truncate("public.a", last=False),
            _truncate("public.b", last=False),
            _truncate("public.c", last=True),
        ]
        assert [e.is_last_event_for_lsn() for e in events] == [False, False, True]
        assert len({e.position for e in events}) == 1

    def test_truncate_flag_defaults_to_last(self):
        msg = TruncateMessage(
            Operation.TRUNCATE, "public.a", TS, 1, Lsn(10), Lsn(20)
        )
        assert msg.is_last_event_for_lsn() is True


class TestMessageFields:
    def test_position_combines_final_and_event_lsn(self):
        msg = _truncate("public.a", last=True)
        assert msg.position == WalPosition(Lsn(600), Lsn(500))

    def test_is_transactional(self):
        framed = _truncate("public.a", last=True)
        unframed = LogicalDecodingMessage(
            Operation.MESSAGE, None, TS, None, Lsn(10), None
        )
        assert framed.is_transactional is True
        assert unframed.is_transactional is False

    def test_row_message_rejects_non_row_operation(self):
        with pytest.raises(ValueError, match="cannot carry operation"):
            RowMessage(Operation.TRUNCATE, "public.a", TS, 1, Lsn(1), Lsn(2))

    def test_messages_are_frozen(self):
        msg = _truncate("public.a", last=False)
        with pytest.raises(AttributeError):
            msg.last_table_in_truncate = True  # type: ignore[misc]

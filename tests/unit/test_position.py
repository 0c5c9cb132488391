"""Unit tests for WalPosition ordering and equality."""

from __future__ import annotations

import itertools

import pytest

from cdc_wal.lsn import Lsn
from cdc_wal.position import WalPosition


def _pos(final_lsn: int | None, lsn: int) -> WalPosition:
    return WalPosition(Lsn(final_lsn) if final_lsn is not None else None, Lsn(lsn))


FINAL_VALUES = [None, 99, 100, 101]
LSN_VALUES = [5, 10, 50, 105, 110, 999]

ALL_POSITIONS = [_pos(f, lsn) for f in FINAL_VALUES for lsn in LSN_VALUES]
FRAMED = [p for p in ALL_POSITIONS if p.final_lsn is not None]
UNFRAMED = [p for p in ALL_POSITIONS if p.final_lsn is None]
PAIRS = list(itertools.product(ALL_POSITIONS, repeat=2))
LSN_ONLY_PAIRS = [(a, b) for a, b in PAIRS if a.final_lsn is None or b.final_lsn is None]


class TestConstruction:
    def test_lsn_is_required(self):
        with pytest.raises(ValueError, match="LSN cannot be None"):
            WalPosition(Lsn(100), None)  # type: ignore[arg-type]

    def test_final_lsn_is_optional(self):
        pos = WalPosition(None, Lsn(10))
        assert pos.final_lsn is None
        assert pos.lsn == Lsn(10)

    def test_immutable(self):
        pos = _pos(100, 105)
        with pytest.raises(AttributeError):
            pos.lsn = Lsn(1)  # type: ignore[misc]

    def test_from_offset(self):
        assert WalPosition.from_offset(Lsn(100), Lsn(105)) == _pos(100, 105)

    def test_offset_dict_round_trip(self):
        pos = WalPosition(Lsn.from_string("1/64"), Lsn.from_string("1/69"))
        data = pos.to_offset()
        assert data == {"final_lsn": "1/64", "lsn": "1/69"}
        assert WalPosition.from_offset_dict(data) == pos

    def test_offset_dict_without_final_lsn(self):
        pos = WalPosition.from_offset_dict({"final_lsn": None, "lsn": "0/32"})
        assert pos == _pos(None, 0x32)

    def test_offset_dict_without_lsn_raises(self):
        with pytest.raises(ValueError, match="LSN cannot be None"):
            WalPosition.from_offset_dict({"final_lsn": "0/1"})

    def test_str(self):
        assert str(_pos(0x64, 0x69)) == "0/64:0/69"
        assert str(_pos(None, 0x32)) == "-:0/32"


class TestScenarios:
    def test_same_transaction_orders_by_event_lsn(self):
        assert _pos(100, 105).is_before(_pos(100, 110)) is True

    def test_earlier_commit_wins_over_event_lsn(self):
        assert _pos(100, 105).is_before(_pos(99, 999)) is False
        assert _pos(99, 999).is_before(_pos(100, 105)) is True

    def test_missing_final_lsn_compares_event_lsn_only(self):
        # 50 < 10 is false even though the other side has a final LSN
        assert _pos(None, 50).is_before(_pos(100, 10)) is False
        assert _pos(100, 10).is_before(_pos(None, 50)) is True

    def test_none_other_is_never_before(self):
        pos = _pos(100, 105)
        assert pos.is_before(None) is False
        assert pos.is_before_or_equal(None) is False
        assert _pos(None, 1).is_before(None) is False

    def test_equal_positions(self):
        assert _pos(100, 105).is_before(_pos(100, 105)) is False
        assert _pos(100, 105).is_before_or_equal(_pos(100, 105)) is True


class TestOrderingProperties:
    def test_framed_is_lexicographic(self):
        for a, b in itertools.product(FRAMED, repeat=2):
            expected = (a.final_lsn, a.lsn) < (b.final_lsn, b.lsn)
            assert a.is_before(b) is expected, (a, b)

    def test_unframed_side_compares_lsn(self):
        for a, b in LSN_ONLY_PAIRS:
            assert a.is_before(b) is (a.lsn < b.lsn), (a, b)
            assert a.is_before_or_equal(b) is (a.lsn <= b.lsn), (a, b)

    def test_before_or_equal_consistent(self):
        for a, b in PAIRS:
            if (a.final_lsn is None) != (b.final_lsn is None):
                # mixed framing compares LSNs only, so distinct positions can tie
                expected = a.is_before(b) or a.lsn == b.lsn
            else:
                expected = a.is_before(b) or a == b
            assert a.is_before_or_equal(b) is expected, (a, b)

    def test_irreflexive(self):
        for a in ALL_POSITIONS:
            assert not a.is_before(a)
            assert a.is_before_or_equal(a)

    def test_transitive_within_framed(self):
        for a, b, c in itertools.product(FRAMED, repeat=3):
            if a.is_before(b) and b.is_before(c):
                assert a.is_before(c)

    def test_transitive_within_unframed(self):
        for a, b, c in itertools.product(UNFRAMED, repeat=3):
            if a.is_before(b) and b.is_before(c):
                assert a.is_before(c)

    def test_asymmetric(self):
        for a, b in PAIRS:
            assert not (a.is_before(b) and b.is_before(a))


class TestEquality:
    def test_structural_equality(self):
        assert _pos(100, 105) == _pos(100, 105)
        assert _pos(100, 105) != _pos(100, 106)
        assert _pos(100, 105) != _pos(101, 105)

    def test_none_final_lsn_equals_only_none(self):
        assert _pos(None, 105) == _pos(None, 105)
        assert _pos(None, 105) != _pos(100, 105)

    def test_equality_laws_and_hash(self):
        for a, b in PAIRS:
            assert a == a
            assert (a == b) is (b == a)
            if a == b:
                assert hash(a) == hash(b)
        for a, b, c in itertools.product(ALL_POSITIONS[:8], repeat=3):
            if a == b and b == c:
                assert a == c

    def test_usable_as_dict_key(self):
        seen = {_pos(100, 105): "x"}
        assert seen[_pos(100, 105)] == "x"

"""Stream positions used to order decoded WAL events.

A position combines two LSNs:

- ``final_lsn``: the commit LSN of the owning transaction, taken from the
  BEGIN message.  ``None`` when the transaction framing is unknown.
- ``lsn``: the LSN of the event itself.  Always present.

Ordering by ``final_lsn`` first replays transactions in commit order, and
the event ``lsn`` tie-break keeps emission order within a transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from cdc_wal.lsn import Lsn


@dataclass(frozen=True, slots=True)
class WalPosition:
    """Immutable position of a single event in the WAL stream."""

    final_lsn: Lsn | None
    lsn: Lsn

    def __post_init__(self) -> None:
        if self.lsn is None:
            msg = "LSN cannot be None"
            raise ValueError(msg)

    @classmethod
    def from_offset(cls, final_lsn: Lsn | None, lsn: Lsn) -> WalPosition:
        """Rebuild a position from persisted offset values."""
        return cls(final_lsn, lsn)

    @classmethod
    def from_offset_dict(cls, data: dict[str, Any]) -> WalPosition:
        """Rebuild a position from the mapping produced by :meth:`to_offset`."""
        final_lsn = data.get("final_lsn")
        lsn = data.get("lsn")
        return cls.from_offset(
            Lsn.from_string(final_lsn) if final_lsn is not None else None,
            Lsn.from_string(lsn) if lsn is not None else None,  # type: ignore[arg-type]
        )

    def to_offset(self) -> dict[str, str | None]:
        return {
            "final_lsn": str(self.final_lsn) if self.final_lsn is not None else None,
            "lsn": str(self.lsn),
        }

    def is_before(self, other: WalPosition | None) -> bool:
        """Return True if this position sorts strictly before *other*.

        When either side lacks a final LSN only the event LSNs are compared.
        """
        if other is None:
            return False

        if self.final_lsn is None or other.final_lsn is None:
            return self.lsn < other.lsn

        if self.final_lsn != other.final_lsn:
            return self.final_lsn < other.final_lsn
        return self.lsn < other.lsn

    def is_before_or_equal(self, other: WalPosition | None) -> bool:
        """Non-strict variant of :meth:`is_before`."""
        if other is None:
            return False

        if self.final_lsn is None or other.final_lsn is None:
            return self.lsn <= other.lsn

        if self.final_lsn != other.final_lsn:
            return self.final_lsn < other.final_lsn
        return self.lsn <= other.lsn

    def shares_framing(self, other: WalPosition | None) -> bool:
        """True when both positions have a final LSN, or neither does.

        Only such pairs order consistently across a mix of transactional and
        non-transactional events.
        """
        if other is None:
            return False
        return (self.final_lsn is None) == (other.final_lsn is None)

    def __str__(self) -> str:
        final = str(self.final_lsn) if self.final_lsn is not None else "-"
        return f"{final}:{self.lsn}"

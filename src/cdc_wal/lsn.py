"""PostgreSQL log sequence numbers.

An LSN is a 64-bit byte offset into the write-ahead log.  PostgreSQL renders
it as two upper-case hex halves separated by a slash, e.g. ``16/B374D848``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import ClassVar

_MAX_LSN = 0xFFFFFFFFFFFFFFFF
_LSN_PATTERN = re.compile(r"^([0-9A-Fa-f]{1,8})/([0-9A-Fa-f]{1,8})$")


@dataclass(frozen=True, slots=True, order=True)
class Lsn:
    """Immutable, totally ordered WAL address."""

    value: int

    INVALID: ClassVar[Lsn]

    def __post_init__(self) -> None:
        if not 0 <= self.value <= _MAX_LSN:
            msg = f"LSN value out of range: {self.value}"
            raise ValueError(msg)

    @classmethod
    def from_string(cls, text: str) -> Lsn:
        """Parse the ``XXX/XXX`` text form used by PostgreSQL."""
        match = _LSN_PATTERN.match(text.strip())
        if match is None:
            msg = f"Invalid LSN '{text}': expected the form 'XXX/XXX'"
            raise ValueError(msg)
        high, low = (int(part, 16) for part in match.groups())
        return cls((high << 32) | low)

    @classmethod
    def coerce(cls, value: Lsn | int | str) -> Lsn:
        """Accept an ``Lsn``, a raw integer or the text form."""
        if isinstance(value, Lsn):
            return value
        if isinstance(value, str):
            return cls.from_string(value)
        return cls(value)

    @property
    def is_valid(self) -> bool:
        return self.value != 0

    def __int__(self) -> int:
        return self.value

    def __str__(self) -> str:
        return f"{self.value >> 32:X}/{self.value & 0xFFFFFFFF:X}"


Lsn.INVALID = Lsn(0)

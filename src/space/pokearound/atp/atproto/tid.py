"""
Timestamp identifiers (TIDs) used as AT Protocol record keys.

A TID is 13 characters of base32-sortable text encoding 63 bits:

- 53 bits: microseconds since the Unix epoch (low 53 bits)
- 10 bits: clock identifier, fixed per generator

Lexicographic order of TIDs from one generator follows time order. Two TIDs
captured in the same microsecond by the same generator collide; that is not
deduplicated.
"""

import secrets
import time
from datetime import datetime, timezone
from typing import Optional

BASE32_SORTABLE = "234567abcdefghijklmnopqrstuvwxyz"
TID_LENGTH = 13

_TIMESTAMP_MASK = (1 << 53) - 1
_CLOCK_ID_MASK = 0x3FF


class InvalidTid(ValueError):
    pass


class InvalidCharacter(InvalidTid):
    pass


def encode(value: int) -> str:
    # 13 chars * 5 bits = 65 bits of capacity, most significant chunk first.
    return "".join(
        BASE32_SORTABLE[(value >> ((TID_LENGTH - 1 - i) * 5)) & 0x1F]
        for i in range(TID_LENGTH)
    )


def decode(tid: str) -> int:
    if not isinstance(tid, str) or len(tid) != TID_LENGTH:
        raise InvalidTid(f"TID must be {TID_LENGTH} characters: {tid!r}")
    value = 0
    for char in tid:
        index = BASE32_SORTABLE.find(char)
        if index < 0:
            raise InvalidCharacter(f"invalid TID character {char!r} in {tid!r}")
        value = (value << 5) | index
    return value


class TIDGenerator:
    """Generates TIDs with a fixed clock identifier.

    The clock id is normally picked at random once per process; pass one
    explicitly to get deterministic output in tests.
    """

    def __init__(self, clock_id: Optional[int] = None) -> None:
        if clock_id is None:
            clock_id = secrets.randbelow(1024)
        self.clock_id = clock_id & _CLOCK_ID_MASK
        self._last_timestamp_us = -1

    def generate(self, timestamp_us: Optional[int] = None) -> str:
        if timestamp_us is None:
            timestamp_us = time.time_ns() // 1000
            # Strictly increasing per generator, even within one microsecond.
            if timestamp_us <= self._last_timestamp_us:
                timestamp_us = self._last_timestamp_us + 1
            self._last_timestamp_us = timestamp_us
        combined = ((timestamp_us & _TIMESTAMP_MASK) << 10) | self.clock_id
        return encode(combined)


default_generator = TIDGenerator()


def generate() -> str:
    """Generate a TID with the process-wide generator."""
    return default_generator.generate()


def to_datetime(tid: str) -> datetime:
    """Return the UTC timestamp encoded in a TID.

    Raises:
        InvalidTid: when the TID is not 13 characters long
        InvalidCharacter: when a character is outside the base32-sortable alphabet
    """
    timestamp_us = decode(tid) >> 10
    seconds, micros = divmod(timestamp_us, 1_000_000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=micros)


def is_valid(tid: str) -> bool:
    return (
        isinstance(tid, str)
        and len(tid) == TID_LENGTH
        and all(char in BASE32_SORTABLE for char in tid)
    )

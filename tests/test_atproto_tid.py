"""
Unit tests for timestamp identifier (TID) generation and decoding.
"""

from datetime import datetime, timezone

import pytest

from space.pokearound.atp.atproto.tid import (
    BASE32_SORTABLE,
    InvalidCharacter,
    InvalidTid,
    TIDGenerator,
    decode,
    encode,
    generate,
    is_valid,
    to_datetime,
)


class TestGenerate:
    def test_shape(self):
        tid = generate()
        assert len(tid) == 13
        assert set(tid) <= set(BASE32_SORTABLE)
        assert is_valid(tid)

    def test_no_collisions_in_a_loop(self):
        generator = TIDGenerator()
        tids = [generator.generate() for _ in range(1000)]
        assert len(set(tids)) == 1000
        assert tids == sorted(tids)

    def test_timestamp_is_now(self):
        decoded = to_datetime(generate())
        delta = abs((datetime.now(timezone.utc) - decoded).total_seconds())
        assert delta < 1

    def test_time_order_matches_string_order(self):
        generator = TIDGenerator(clock_id=7)
        earlier = generator.generate(timestamp_us=1_700_000_000_000_000)
        later = generator.generate(timestamp_us=1_700_000_000_000_001)
        assert earlier < later

    def test_clock_id_is_injectable(self):
        first = TIDGenerator(clock_id=42).generate(timestamp_us=1_700_000_000_000_000)
        second = TIDGenerator(clock_id=42).generate(timestamp_us=1_700_000_000_000_000)
        assert first == second
        assert decode(first) & 0x3FF == 42

    def test_clock_id_is_masked_to_ten_bits(self):
        assert TIDGenerator(clock_id=1024 + 5).clock_id == 5


class TestDecode:
    def test_round_trip_timestamp(self):
        timestamp_us = 1_700_000_000_123_456
        tid = TIDGenerator(clock_id=1).generate(timestamp_us=timestamp_us)
        assert to_datetime(tid) == datetime(
            2023, 11, 14, 22, 13, 20, 123456, tzinfo=timezone.utc
        )

    def test_zero(self):
        assert encode(0) == "2222222222222"
        assert decode("2222222222222") == 0

    def test_wrong_length(self):
        with pytest.raises(InvalidTid):
            to_datetime("abc")

    def test_invalid_character(self):
        with pytest.raises(InvalidCharacter):
            to_datetime("222222222222A")

    def test_invalid_character_is_an_invalid_tid(self):
        assert issubclass(InvalidCharacter, InvalidTid)


class TestIsValid:
    @pytest.mark.parametrize(
        "value",
        [
            "0000000000000",
            "1111111111111",
            "2222222222228",
            "2222222222229",
            "22222222222AB",
            "222222222222",
            "22222222222222",
            "",
        ],
    )
    def test_rejects(self, value):
        assert not is_valid(value)

    def test_accepts(self):
        assert is_valid("3jzfcijpj2z2a")

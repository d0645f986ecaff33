"""Tests for lax remote timestamp parsing."""

from __future__ import annotations

from datetime import UTC, datetime

from engine.services.datetime_service import format_iso, parse_timestamp

EXPECTED = datetime(2026, 2, 2, 22, 21, 29, tzinfo=UTC)


class TestParseTimestamp:
    def test_iso_with_z_suffix(self) -> None:
        assert parse_timestamp("2026-02-02T22:21:29Z") == EXPECTED

    def test_iso_with_offset(self) -> None:
        assert parse_timestamp("2026-02-02T23:21:29+01:00") == EXPECTED

    def test_epoch_seconds_and_milliseconds(self) -> None:
        seconds = int(EXPECTED.timestamp())

        assert parse_timestamp(seconds) == EXPECTED
        assert parse_timestamp(seconds * 1000) == EXPECTED
        assert parse_timestamp(str(seconds * 1000)) == EXPECTED

    def test_naive_datetime_is_utc(self) -> None:
        assert parse_timestamp(datetime(2026, 2, 2, 22, 21, 29)) == EXPECTED

    def test_date_only(self) -> None:
        assert parse_timestamp("2026-02-02") == datetime(2026, 2, 2, tzinfo=UTC)

    def test_garbage_is_none(self) -> None:
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None
        assert parse_timestamp("yesterday-ish") is None
        assert parse_timestamp(True) is None  # type: ignore[arg-type]


class TestFormatIso:
    def test_naive_is_marked_utc(self) -> None:
        assert format_iso(datetime(2026, 1, 1)) == "2026-01-01T00:00:00+00:00"

    def test_roundtrip(self) -> None:
        assert parse_timestamp(format_iso(EXPECTED)) == EXPECTED

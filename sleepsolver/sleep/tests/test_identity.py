"""Tests for stable period identifiers."""

from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone

from sleepsolver.sleep.identity import iso8601_utc, stable_period_id
from sleepsolver.sleep.tests.conftest import PHONE_SOURCE, WATCH_SOURCE, at


class TestIso8601Utc:
    def test_formats_with_z_suffix(self) -> None:
        assert iso8601_utc(datetime(2026, 2, 22, 22, 30, tzinfo=timezone.utc)) == "2026-02-22T22:30:00Z"

    def test_converts_offset_to_utc(self) -> None:
        plus_two = timezone(timedelta(hours=2))
        assert iso8601_utc(datetime(2026, 2, 23, 0, 30, tzinfo=plus_two)) == "2026-02-22T22:30:00Z"

    def test_naive_treated_as_utc(self) -> None:
        assert iso8601_utc(datetime(2026, 2, 22, 22, 30)) == "2026-02-22T22:30:00Z"

    def test_drops_sub_second_precision(self) -> None:
        moment = datetime(2026, 2, 22, 22, 30, 5, 999999, tzinfo=timezone.utc)
        assert iso8601_utc(moment) == "2026-02-22T22:30:05Z"


class TestStablePeriodId:
    def test_same_input_same_id(self) -> None:
        assert stable_period_id(WATCH_SOURCE, at(22)) == stable_period_id(WATCH_SOURCE, at(22))

    def test_matches_sha256_of_canonical_string(self) -> None:
        expected = hashlib.sha256(f"{WATCH_SOURCE}-2026-02-22T22:00:00Z".encode()).hexdigest()
        assert stable_period_id(WATCH_SOURCE, at(22)) == expected

    def test_different_source_different_id(self) -> None:
        assert stable_period_id(WATCH_SOURCE, at(22)) != stable_period_id(PHONE_SOURCE, at(22))

    def test_different_start_different_id(self) -> None:
        assert stable_period_id(WATCH_SOURCE, at(22)) != stable_period_id(WATCH_SOURCE, at(22, 1))

    def test_equivalent_instants_share_id(self) -> None:
        """The same instant expressed in another zone yields the same id."""
        local = at(22).astimezone(timezone(timedelta(hours=-5)))
        assert stable_period_id(WATCH_SOURCE, local) == stable_period_id(WATCH_SOURCE, at(22))

    def test_id_is_hex_digest(self) -> None:
        period_id = stable_period_id(WATCH_SOURCE, at(22))
        assert len(period_id) == 64
        int(period_id, 16)

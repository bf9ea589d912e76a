"""
Event Time Semantics Tests (Unit)
=================================

WHAT: Unit tests for timestamp normalization and platform parsing.
WHY: Clicks and sales arrive from many producers; a naive timestamp compared
     against an aware one raises mid-correlation, and an unknown platform
     string must not reject the event.

NOTE:
These tests live outside `backend/clickcredit/tests/` to avoid loading the
service-level `conftest.py`, which builds fakes and settings not required here.

REFERENCES:
- backend/clickcredit/services/attribution/types.py
"""

from datetime import datetime, timedelta, timezone

from clickcredit.services.attribution.types import (
    Platform,
    ScoringWeights,
    ensure_utc,
    normalize_weights,
    parse_datetime,
)


def test_ensure_utc_treats_naive_as_utc() -> None:
    naive = datetime(2025, 12, 15, 11, 15)

    result = ensure_utc(naive)

    assert result == datetime(2025, 12, 15, 11, 15, tzinfo=timezone.utc)
    assert result.tzinfo is timezone.utc


def test_ensure_utc_converts_offsets() -> None:
    """Aware timestamps keep their instant but are expressed in UTC."""
    amsterdam = datetime(2025, 12, 15, 12, 15, tzinfo=timezone(timedelta(hours=1)))

    assert ensure_utc(amsterdam) == datetime(2025, 12, 15, 11, 15, tzinfo=timezone.utc)
    assert ensure_utc(amsterdam).utcoffset() == timedelta(0)


def test_parse_datetime_accepts_iso_strings_and_blanks() -> None:
    assert parse_datetime("2025-12-15T11:15:00+00:00") == datetime(2025, 12, 15, 11, 15, tzinfo=timezone.utc)
    assert parse_datetime("2025-12-15T11:15:00").tzinfo is timezone.utc
    assert parse_datetime("") is None
    assert parse_datetime(None) is None


def test_platform_parse_is_lenient() -> None:
    assert Platform.parse("YOUTUBE") is Platform.youtube
    assert Platform.parse(" tiktok ") is Platform.tiktok
    assert Platform.parse("myspace") is Platform.other
    assert Platform.parse(None) is Platform.other


def test_default_weights_are_normalized() -> None:
    weights = ScoringWeights.default()

    assert abs(sum(weights.signals.values()) - 1.0) < 1e-9
    assert weights.version == "v1.0.0"


def test_normalize_weights_falls_back_to_uniform() -> None:
    uniform = normalize_weights({})

    assert set(uniform.values()) == {0.2}

"""Tests for token expiry status computed from integration metadata."""

from datetime import datetime, timedelta, timezone

import pytest

from src.credentials.expiration import (
    ExpiryStatus,
    classify_expiry,
    parse_timestamp,
    token_expiration_status,
)

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _in_days(days):
    return (NOW + timedelta(days=days)).isoformat()


class TestParseTimestamp:

    def test_iso_with_z_suffix(self):
        assert parse_timestamp("2026-06-01T12:00:00Z") == NOW

    def test_naive_iso_treated_as_utc(self):
        assert parse_timestamp("2026-06-01T12:00:00") == NOW

    def test_epoch_seconds_and_milliseconds(self):
        seconds = int(NOW.timestamp())

        assert parse_timestamp(seconds) == NOW
        assert parse_timestamp(seconds * 1000) == NOW

    @pytest.mark.parametrize("value", [None, "", "not-a-date", ["2026"]])
    def test_unparseable_values(self, value):
        assert parse_timestamp(value) is None


class TestClassifyExpiry:

    @pytest.mark.parametrize("days,expected", [
        (-1, ExpiryStatus.EXPIRED),
        (0, ExpiryStatus.EXPIRED),
        (3, ExpiryStatus.EXPIRING),
        (7, ExpiryStatus.EXPIRING),
        (10, ExpiryStatus.WARNING),
        (14, ExpiryStatus.WARNING),
        (30, ExpiryStatus.OK),
        (None, ExpiryStatus.UNKNOWN),
    ])
    def test_access_thresholds(self, days, expected):
        assert classify_expiry(days, (7, 14)) == expected

    def test_refresh_warning_window_is_wider(self):
        assert classify_expiry(20, (7, 30)) == ExpiryStatus.WARNING
        assert classify_expiry(20, (7, 14)) == ExpiryStatus.OK


class TestTokenExpirationStatus:

    def test_healthy_connection(self):
        status = token_expiration_status(
            {"access_token_expires_at": _in_days(50), "refresh_token_expires_at": _in_days(300)},
            now=NOW,
        )

        assert status.access_token_status == ExpiryStatus.OK
        assert status.refresh_token_status == ExpiryStatus.OK
        assert status.needs_reconnect is False

    def test_falls_back_to_expires_at(self):
        status = token_expiration_status({"expires_at": _in_days(5)}, now=NOW)

        assert status.access_token_status == ExpiryStatus.EXPIRING
        assert status.refresh_token_status == ExpiryStatus.UNKNOWN

    def test_expiring_refresh_token_needs_reconnect(self):
        status = token_expiration_status({"refresh_token_expires_at": _in_days(2)}, now=NOW)

        assert status.needs_reconnect is True
        assert status.to_dict()["refresh_token_status"] == "expiring"

    def test_empty_metadata(self):
        data = token_expiration_status(None, now=NOW).to_dict()

        assert data == {
            "access_token_status": "unknown",
            "refresh_token_status": "unknown",
            "access_token_expires_at": None,
            "refresh_token_expires_at": None,
            "needs_reconnect": False,
        }

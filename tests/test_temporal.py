from datetime import date, datetime, timedelta, timezone

import pytest

from eventlens.services.temporal import (
    calendar_date,
    compute_event_window,
    event_end_instant,
    is_event_active,
    is_storage_expired,
    normalize_instant,
    storage_expiry_instant,
)

UTC = timezone.utc


def test_normalize_instant_encodings():
    expected = datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC)
    assert normalize_instant(1700000000) == expected
    assert normalize_instant({"_seconds": 1700000000, "_nanoseconds": 0}) == expected
    assert normalize_instant("2023-11-14T22:13:20Z") == expected
    assert normalize_instant("2023-11-14T23:13:20+01:00") == expected
    assert normalize_instant(datetime(2023, 11, 14, 22, 13, 20)) == expected
    assert normalize_instant(None) is None


def test_normalize_instant_rejects_garbage():
    with pytest.raises(ValueError):
        normalize_instant("yesterday")
    with pytest.raises(ValueError):
        normalize_instant(True)


def test_calendar_date_keeps_plain_dates_literal():
    assert calendar_date("2026-03-01") == date(2026, 3, 1)
    assert calendar_date("2026-03-01T23:30:00-05:00") == date(2026, 3, 2)


def test_overnight_window():
    window = compute_event_window("2026-06-20", "22:00", "02:00", "UTC")
    assert window.overnight
    assert window.duration == timedelta(hours=4)
    assert window.end == datetime(2026, 6, 21, 2, 0, tzinfo=window.end.tzinfo)


def test_same_start_and_end_means_full_day():
    window = compute_event_window("2026-06-20", "10:00", "10:00", "UTC")
    assert window.duration == timedelta(hours=24)


def test_window_in_event_zone():
    window = compute_event_window("2026-06-20", "18:00", "23:00", "Europe/London")
    assert window.start.astimezone(UTC) == datetime(2026, 6, 20, 17, 0, tzinfo=UTC)


def test_bad_window_inputs():
    with pytest.raises(ValueError):
        compute_event_window("2026-06-20", "25:00", "02:00", "UTC")
    with pytest.raises(ValueError):
        compute_event_window("2026-06-20", "10:00", "12:00", "Mars/Olympus")


def test_active_boundary_is_inclusive():
    end = datetime(2026, 6, 21, 2, 0, tzinfo=UTC)
    event = {"eventEndDate": end.isoformat()}
    assert is_event_active(event, end) is True
    assert is_event_active(event, end + timedelta(seconds=1)) is False


def test_end_composed_from_date_and_time_when_missing():
    event = {"eventDate": "2026-06-20T09:00:00Z", "eventEndTime": "17:30", "timeZone": "UTC"}
    assert event_end_instant(event) == datetime(2026, 6, 20, 17, 30, tzinfo=UTC)
    # Default end of day
    event = {"eventDate": "2026-06-20T09:00:00Z", "timeZone": "UTC"}
    assert event_end_instant(event) == datetime(2026, 6, 20, 23, 59, tzinfo=UTC)


def test_event_without_date_counts_as_active():
    assert is_event_active({}) is True


def test_storage_is_independent_of_status():
    start = datetime(2026, 6, 20, 18, 0, tzinfo=UTC)
    event = {
        "status": "expired",
        "eventDate": start,
        "eventEndDate": start + timedelta(hours=5),
        "timeZone": "UTC",
        "customPlan": {"storageDays": 365},
    }
    later = start + timedelta(days=30)
    assert is_event_active(event, later) is False
    assert is_storage_expired(event, later) is False
    assert is_storage_expired(event, start + timedelta(days=366)) is True


def test_storage_expiry_keeps_local_wall_clock_across_dst():
    # 180 days after an 18:00 EDT start lands in EST
    start = datetime(2026, 6, 20, 22, 0, tzinfo=UTC)  # 18:00 EDT
    event = {"eventDate": start, "timeZone": "America/New_York", "customPlan": '{"storageDays": 180}'}
    expiry = storage_expiry_instant(event)
    # 18:00 EST is 23:00 UTC
    assert expiry == datetime(2026, 12, 17, 23, 0, tzinfo=UTC)


def test_storage_without_days_never_expires():
    event = {"eventDate": "2020-01-01T00:00:00Z", "customPlan": {}}
    assert is_storage_expired(event) is False


def test_composed_end_rolls_overnight_events_to_next_day():
    event = {"eventDate": "2026-06-20T22:00:00Z", "eventStartTime": "22:00", "eventEndTime": "02:00", "timeZone": "UTC"}
    assert event_end_instant(event) == datetime(2026, 6, 21, 2, 0, tzinfo=UTC)
    assert is_event_active(event, datetime(2026, 6, 20, 23, 0, tzinfo=UTC)) is True
    assert is_event_active(event, datetime(2026, 6, 21, 2, 1, tzinfo=UTC)) is False


def test_plain_event_date_is_the_local_day():
    event = {"eventDate": "2026-06-20", "eventEndTime": "20:00", "timeZone": "America/New_York"}
    # 20:00 EDT is midnight UTC the next day
    assert event_end_instant(event) == datetime(2026, 6, 21, 0, 0, tzinfo=UTC)


def test_storage_expiry_from_plain_date_in_zone_behind_utc():
    event = {"eventDate": "2026-06-20", "timeZone": "America/New_York", "customPlan": {"storageDays": 7}}
    # Local midnight on 2026-06-27 EDT
    assert storage_expiry_instant(event) == datetime(2026, 6, 27, 4, 0, tzinfo=UTC)
    assert is_storage_expired(event, datetime(2026, 6, 27, 3, 59, tzinfo=UTC)) is False

from datetime import datetime, timedelta, timezone

import pytest

from globe.clock import iso
from globe.heat_tiles import aggregate_heat_tiles, window_bounds

NOW = datetime(2024, 6, 1, 22, 7, 30, tzinfo=timezone.utc)


def _row(user, lat=51.5074, lng=-0.1278, seen=NOW - timedelta(minutes=2), expires=None):
    row = {"user_id": user, "lat": lat, "lng": lng, "updated_at": iso(seen)}
    if expires is not None:
        row["expires_at"] = iso(expires)
    return row


def test_window_bounds_align_to_window():
    start, end = window_bounds(NOW, 900)
    assert start == datetime(2024, 6, 1, 22, 0, tzinfo=timezone.utc)
    assert end == datetime(2024, 6, 1, 22, 15, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        window_bounds(NOW, 0)


def test_counts_distinct_users_per_cell_and_flags_k():
    rows = [_row(f"u{i}") for i in range(5)] + [_row("u0")] + [_row("v1", lat=48.85, lng=2.35)]
    tiles = aggregate_heat_tiles(rows, city="london", cell_deg=0.1, window_seconds=900, k_min=5, now=NOW)
    by_cell = {t["cell_id"]: t for t in tiles}
    london = by_cell["0.1:1415:1798"]
    assert london["user_count"] == 5
    assert london["k_threshold_met"] is True
    assert london["window_start"] == iso(datetime(2024, 6, 1, 22, 0, tzinfo=timezone.utc))
    paris = [t for t in tiles if t["cell_id"] != "0.1:1415:1798"][0]
    assert paris["k_threshold_met"] is False
    assert paris["user_count"] is None
    assert [t["cell_id"] for t in tiles] == sorted(t["cell_id"] for t in tiles)


def test_expired_rows_are_not_live():
    rows = [_row(f"u{i}", expires=NOW - timedelta(hours=1)) for i in range(5)]
    assert aggregate_heat_tiles(rows, "london", 0.1, 900, 5, now=NOW) == []


def test_rows_without_expiry_stay_live_for_one_window():
    fresh = [_row(f"u{i}", seen=NOW - timedelta(minutes=10)) for i in range(5)]
    old = [_row(f"o{i}", seen=NOW - timedelta(hours=2)) for i in range(5)]
    tiles = aggregate_heat_tiles(fresh + old, "london", 0.1, 900, 5, now=NOW)
    assert len(tiles) == 1
    assert tiles[0]["user_count"] == 5


def test_rows_without_location_or_user_are_skipped():
    rows = [{"user_id": "a", "updated_at": iso(NOW)}, {"lat": 1, "lng": 1, "updated_at": iso(NOW)}, None]
    assert aggregate_heat_tiles(rows, "london", 0.1, 900, 1, now=NOW) == []


def test_invalid_arguments():
    with pytest.raises(ValueError):
        aggregate_heat_tiles([], "london", 0, 900, 5, now=NOW)
    with pytest.raises(ValueError):
        aggregate_heat_tiles([], "london", 0.1, 900, 0, now=NOW)

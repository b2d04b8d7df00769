from datetime import timedelta

import pytest

from globe.clock import utcnow
from globe.zones import PresencePoint, calculate_zone_blobs

NOW = utcnow()


def _points(n, lat, lng, prefix, age_seconds=0):
    return [
        PresencePoint(user_id=f"{prefix}{i}", lat=lat, lng=lng, seen_at=NOW - timedelta(seconds=age_seconds))
        for i in range(n)
    ]


def test_blob_below_k_is_dropped():
    blobs = calculate_zone_blobs(_points(4, 51.505, -0.125, "u"), cell_deg=0.01, k_min=5, now=NOW)
    assert blobs == []


def test_touching_cells_merge_into_one_blob():
    pts = _points(3, 51.505, -0.125, "a") + _points(3, 51.515, -0.115, "b")
    blobs = calculate_zone_blobs(pts, cell_deg=0.01, k_min=5, now=NOW)
    assert len(blobs) == 1
    blob = blobs[0]
    assert blob.user_count == 6
    assert len(blob.cells) == 2
    assert blob.intensity == 1.0
    # centroid sits between the two cell centres, never on a raw point
    assert 51.505 < blob.lat < 51.515
    assert blob.radius_m > 0


def test_separate_clusters_stay_separate_and_sort_by_weight():
    pts = _points(6, 51.505, -0.125, "a") + _points(5, 51.605, -0.025, "b")
    blobs = calculate_zone_blobs(pts, cell_deg=0.01, k_min=5, now=NOW)
    assert [b.user_count for b in blobs] == [6, 5]
    assert blobs[0].intensity == 1.0
    assert blobs[1].intensity == pytest.approx(5 / 6)


def test_each_user_counts_once_at_latest_position():
    moved = [
        PresencePoint("u0", 51.905, -0.125, NOW - timedelta(seconds=200)),
        PresencePoint("u0", 51.505, -0.125, NOW - timedelta(seconds=10)),
    ]
    pts = _points(4, 51.505, -0.125, "x") + moved
    blobs = calculate_zone_blobs(pts, cell_deg=0.01, k_min=5, now=NOW)
    assert len(blobs) == 1
    assert blobs[0].user_count == 5


def test_old_and_future_points_are_ignored():
    pts = _points(5, 51.505, -0.125, "old", age_seconds=2000) + [
        PresencePoint("future", 51.505, -0.125, NOW + timedelta(seconds=600))
    ]
    assert calculate_zone_blobs(pts, cell_deg=0.01, k_min=1, now=NOW, window_seconds=900) == []


def test_weight_decays_with_half_life():
    fresh = calculate_zone_blobs(_points(5, 51.505, -0.125, "f"), cell_deg=0.01, k_min=5, now=NOW)
    aged = calculate_zone_blobs(
        _points(5, 51.505, -0.125, "g", age_seconds=300), cell_deg=0.01, k_min=5, now=NOW, half_life_seconds=300
    )
    assert fresh[0].weight == pytest.approx(5.0)
    assert aged[0].weight == pytest.approx(2.5)


def test_blob_ids_are_stable():
    pts = _points(5, 51.505, -0.125, "u")
    first = calculate_zone_blobs(pts, cell_deg=0.01, k_min=5, now=NOW)
    second = calculate_zone_blobs(list(reversed(pts)), cell_deg=0.01, k_min=5, now=NOW)
    assert first[0].blob_id == second[0].blob_id
    assert first[0].cells == second[0].cells


def test_invalid_parameters():
    with pytest.raises(ValueError):
        calculate_zone_blobs([], cell_deg=0.01, k_min=0)
    with pytest.raises(ValueError):
        calculate_zone_blobs([], cell_deg=0.01, k_min=1, half_life_seconds=0)


def test_presence_point_from_row():
    p = PresencePoint.from_row({"user_id": "u1", "geo": "POINT(-0.1 51.5)", "updated_at": "2024-01-01T00:00:00Z"})
    assert (p.user_id, p.lat, p.lng) == ("u1", 51.5, -0.1)
    assert p.seen_at.year == 2024
    assert PresencePoint.from_row({"user_id": "u1"}) is None


def test_payload_hides_member_cells():
    # a lone user in a neighbouring cell rides along in a blob that meets k
    pts = _points(9, 51.505, -0.125, "crowd") + _points(1, 51.515, -0.125, "lone")
    (blob,) = calculate_zone_blobs(pts, cell_deg=0.01, k_min=10, now=NOW)
    assert len(blob.cells) == 2
    payload = blob.to_dict()
    assert "cells" not in payload
    assert payload["user_count"] == 10

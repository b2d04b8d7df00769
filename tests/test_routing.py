import requests

from webapp.services.routing import (
    approximate_duration_seconds,
    cache_row,
    distance_matrix_mode,
    fetch_distance_matrix,
)
from globe.clock import parse_ts

ORIGIN = (51.5, -0.1)


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params, timeout))
        if self.exc is not None:
            raise self.exc
        return self.response


def _ok_body(*elements):
    return {"status": "OK", "rows": [{"elements": list(elements)}]}


def test_distance_matrix_success():
    session = FakeSession(
        FakeResponse(
            body=_ok_body(
                {"status": "OK", "duration": {"value": 420}, "distance": {"value": 800}},
                {"status": "ZERO_RESULTS"},
            )
        )
    )
    res = fetch_distance_matrix("key", ORIGIN, [(51.51, -0.1), (40.0, -70.0)], "WALK", session=session)
    assert res.ok
    assert res.results == [
        {"ok": True, "duration_seconds": 420, "distance_meters": 800},
        {"ok": False, "duration_seconds": None, "distance_meters": None},
    ]
    _, params, timeout = session.calls[0]
    assert params["mode"] == "walking"
    assert params["destinations"] == "51.51,-0.1|40.0,-70.0"
    assert timeout == 20


def test_distance_matrix_provider_errors():
    denied = FakeSession(FakeResponse(body={"status": "REQUEST_DENIED", "error_message": "bad key"}))
    res = fetch_distance_matrix("key", ORIGIN, [(51.51, -0.1)], "DRIVE", session=denied)
    assert not res.ok
    assert "REQUEST_DENIED" in res.error

    http_err = FakeSession(FakeResponse(status_code=500))
    assert fetch_distance_matrix("key", ORIGIN, [(51.51, -0.1)], "DRIVE", session=http_err).error == "Distance Matrix HTTP 500"

    missing = FakeSession(FakeResponse(body={"status": "OK", "rows": []}))
    assert not fetch_distance_matrix("key", ORIGIN, [(51.51, -0.1)], "DRIVE", session=missing).ok


def test_distance_matrix_transport_errors():
    timeout = FakeSession(exc=requests.Timeout("slow"))
    assert fetch_distance_matrix("key", ORIGIN, [(51.51, -0.1)], "WALK", session=timeout).error == "Distance Matrix timed out"
    broken = FakeSession(exc=requests.ConnectionError("down"))
    assert fetch_distance_matrix("key", ORIGIN, [(51.51, -0.1)], "WALK", session=broken).error == "Distance Matrix request failed"


def test_distance_matrix_short_circuits():
    session = FakeSession()
    assert fetch_distance_matrix("key", ORIGIN, [], "WALK", session=session).results == []
    assert not fetch_distance_matrix("key", ORIGIN, [(1, 1)], "HOVER", session=session).ok
    assert session.calls == []


def test_distance_matrix_mode_mapping():
    assert distance_matrix_mode("BICYCLE") == "bicycling"
    assert distance_matrix_mode("TRANSIT") == "transit"
    assert distance_matrix_mode("SAIL") is None


def test_approximate_durations_order_by_speed():
    dest = (51.55, -0.1)
    walk = approximate_duration_seconds(ORIGIN, dest, "WALK")
    drive = approximate_duration_seconds(ORIGIN, dest, "DRIVE")
    assert walk[0] == drive[0]
    assert walk[1] > approximate_duration_seconds(ORIGIN, dest, "BICYCLE")[1] > drive[1]
    assert approximate_duration_seconds(ORIGIN, ORIGIN, "DRIVE") == (0, 60)
    assert approximate_duration_seconds(ORIGIN, dest, "SAIL")[1] is None


def test_cache_row_expiry():
    row = cache_row("k", "51.50,-0.10", "51.51,-0.10", "WALK", 300, 900, ttl_seconds=120)
    assert row["provider"] == "DIST_MATRIX"
    delta = parse_ts(row["expires_at"]) - parse_ts(row["computed_at"])
    assert delta.total_seconds() == 120

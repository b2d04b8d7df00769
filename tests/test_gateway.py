import asyncio
from datetime import timedelta

import httpx
import pytest

from fakes import FakeAPIError, FakeSupabase
from globe.clock import iso, utcnow
from webapp.services import gateway
from webapp.services.gateway import DataGateway, is_missing_function_error, is_missing_table_error


def run(coro):
    return asyncio.run(coro)


def test_error_classifiers():
    assert is_missing_function_error(FakeAPIError("x", code="PGRST202"))
    assert is_missing_function_error(Exception("function nearby_candidates does not exist"))
    assert not is_missing_function_error(FakeAPIError("permission denied", code="42501"))
    assert is_missing_table_error(FakeAPIError("x", code="42P01"))
    assert not is_missing_table_error(FakeAPIError("permission denied", code="42501"))


def test_nearby_candidates_prefers_secure_rpc():
    db = FakeSupabase().on_rpc("nearby_candidates_secure", [{"user_id": "a", "distance_meters": 10}])
    rows, source = run(DataGateway(db).nearby_candidates(51.5, -0.1, 1000, 10, "me"))
    assert source == "nearby_candidates_secure"
    assert rows[0]["user_id"] == "a"
    assert db.rpc_calls[0][1]["p_max_age_seconds"] == 900


def test_nearby_candidates_falls_back_to_legacy_then_local():
    db = FakeSupabase().on_rpc("nearby_candidates", [{"user_id": "b"}])
    rows, source = run(DataGateway(db).nearby_candidates(51.5, -0.1, 1000, 10, "me"))
    assert source == "nearby_candidates"

    fresh = iso(utcnow() - timedelta(seconds=30))
    db = FakeSupabase(
        {
            "user_presence_locations": [
                {"auth_user_id": "c", "lat": 51.501, "lng": -0.1, "updated_at": fresh},
                {"auth_user_id": "me", "lat": 51.5, "lng": -0.1, "updated_at": fresh},
            ]
        }
    )
    rows, source = run(DataGateway(db).nearby_candidates(51.5, -0.1, 1000, 10, "me"))
    assert source == "local"
    assert [r["user_id"] for r in rows] == ["c"]


def test_nearby_candidates_propagates_real_rpc_errors():
    db = FakeSupabase().on_rpc("nearby_candidates_secure", FakeAPIError("permission denied", code="42501"))
    with pytest.raises(FakeAPIError):
        run(DataGateway(db).nearby_candidates(51.5, -0.1, 1000, 10, "me"))


def test_retry_gives_up_after_transport_errors(monkeypatch):
    async def no_sleep(_):
        return None

    monkeypatch.setattr(gateway.asyncio, "sleep", no_sleep)
    db = FakeSupabase()
    db.table_errors["presence"] = httpx.ConnectError("refused")
    with pytest.raises(RuntimeError, match="SELECT_FAILED"):
        run(DataGateway(db).select("presence"))
    assert len(db.calls) == 3


def test_cached_select_serves_stale_when_degraded(monkeypatch):
    async def no_sleep(_):
        return None

    monkeypatch.setattr(gateway.asyncio, "sleep", no_sleep)
    db = FakeSupabase({"globe_heat_tiles": [{"city": "london", "cell_id": "x", "k_threshold_met": True}]})
    gw = DataGateway(db)

    rows, degraded = run(gw.cached_select("k", 0, "globe_heat_tiles"))
    assert len(rows) == 1 and degraded is False

    db.table_errors["globe_heat_tiles"] = httpx.ReadTimeout("slow")
    rows, degraded = run(gw.cached_select("k", 0, "globe_heat_tiles"))
    assert len(rows) == 1 and degraded is True
    assert gw.last_degraded is True

    rows, degraded = run(gw.cached_select("other", 0, "globe_heat_tiles"))
    assert rows == [] and degraded is True


def test_writes_invalidate_table_cache():
    db = FakeSupabase({"system_settings": []})
    gw = DataGateway(db)
    run(gw.cached_select("system_settings:all", 60, "system_settings"))
    run(gw.put_setting("safety_switch", {"global_disabled": True}))
    rows, _ = run(gw.cached_select("system_settings:all", 60, "system_settings"))
    assert rows[0]["value"] == {"global_disabled": True}


def test_routing_rate_limit_is_best_effort():
    db = FakeSupabase()
    assert run(DataGateway(db).check_routing_rate_limit("b", "u", None)) is None
    db.on_rpc("check_routing_rate_limit", [{"allowed": False}])
    assert run(DataGateway(db).check_routing_rate_limit("b", "u", None)) is False


def test_viewer_profile_falls_through_user_tables():
    db = FakeSupabase({"users": [{"id": "1", "auth_user_id": "u1", "email": "a@b"}]})
    db.table_errors["User"] = FakeAPIError("relation \"User\" does not exist", code="42P01")
    table, profile = run(DataGateway(db).get_viewer_profile("u1", "a@b"))
    assert table == "users"
    assert profile["id"] == "1"


def test_per_request_gateways_share_one_lock():
    first = DataGateway(FakeSupabase({"presence": [{"user_id": "a"}]}))
    second = DataGateway(FakeSupabase({"presence": [{"user_id": "b"}]}))
    assert first._lock is second._lock

    async def both():
        return await asyncio.gather(first.select("presence"), second.select("presence"))

    a_rows, b_rows = run(both())
    assert a_rows == [{"user_id": "a"}]
    assert b_rows == [{"user_id": "b"}]

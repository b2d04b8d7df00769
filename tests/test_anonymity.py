from datetime import timedelta

import pytest

from globe.anonymity import (
    HeatTile,
    ZoomState,
    can_render,
    filter_renderable_tiles,
    public_tile,
    render_decision,
    zoom_contract,
    zoom_state,
)
from globe.clock import iso, utcnow
from webapp.services.safety_switch import SafetyState


def _tile(count=7, cell_deg=0.1, age_seconds=60, city="london", category=None, cell="0.1:1415:1798"):
    now = utcnow()
    return HeatTile(
        city=city,
        cell_id=cell,
        lat=51.55,
        lng=-0.15,
        cell_deg=cell_deg,
        user_count=count,
        window_start=now - timedelta(seconds=age_seconds + 900),
        window_end=now - timedelta(seconds=age_seconds),
        category=category,
    )


@pytest.mark.parametrize(
    "zoom,prev,expected",
    [
        (0, None, ZoomState.WORLD),
        (2.7, 2.0, ZoomState.CITY_APPROACHING),
        (2.7, 3.5, ZoomState.WORLD),
        (5, None, ZoomState.CITY),
        (7.6, 7.0, ZoomState.DISTRICT_APPROACHING),
        (9, None, ZoomState.DISTRICT),
        (11.8, 11.0, ZoomState.STREET_APPROACHING),
        (15.8, 15.0, ZoomState.STREET),
        (16, None, ZoomState.INTIMATE),
        (-4, None, ZoomState.WORLD),
        (float("nan"), None, ZoomState.WORLD),
    ],
)
def test_zoom_state(zoom, prev, expected):
    assert zoom_state(zoom, prev) == expected


def test_zoom_contract_grid_and_k_scale_with_zoom():
    city = zoom_contract(5, k_min=5)
    district = zoom_contract(9, k_min=5)
    street = zoom_contract(13, k_min=5)
    assert (city.cell_deg, city.k_min, city.heat_level) == (0.1, 5, "city")
    assert (district.cell_deg, district.k_min, district.heat_level) == (0.01, 10, "zone")
    assert (street.cell_deg, street.k_min, street.heat_level) == (0.005, 15, "street")
    assert city.show_zones is False
    assert district.show_zones is True and street.show_zones is True


def test_intimate_contract_never_draws_heat():
    contract = zoom_contract(18)
    assert contract.state == ZoomState.INTIMATE
    assert contract.show_heat is False
    assert contract.cell_deg is None and contract.k_min is None
    assert contract.to_dict()["heat_level"] == "sparkle_only"


def test_approaching_contract_keeps_coarser_grid():
    contract = zoom_contract(7.7, 7.0, k_min=5)
    assert contract.state == ZoomState.DISTRICT_APPROACHING
    assert contract.heat_level == "blending"
    assert contract.cell_deg == 0.1
    assert contract.k_min == 5
    assert contract.show_zones is False


def test_zoom_contract_rejects_bad_k():
    with pytest.raises(ValueError):
        zoom_contract(5, k_min=0)


def test_render_decision_ok_for_fresh_tile_above_k():
    assert render_decision(_tile(), zoom_contract(5)) == (True, "ok")
    # coarser tiles are fine at a finer zoom
    assert can_render(_tile(cell_deg=1.0), zoom_contract(5))


def test_render_decision_reasons():
    city = zoom_contract(5, k_min=5)
    assert render_decision(_tile(count=4), city) == (False, "below_k")
    assert render_decision(_tile(count=None), city) == (False, "below_k")
    assert render_decision(_tile(cell_deg=0.01), city) == (False, "too_fine")
    assert render_decision(_tile(age_seconds=7200), city) == (False, "stale")
    assert render_decision(_tile(count=10), zoom_contract(18)) == (False, "zoom_suppressed")


def test_district_needs_double_k():
    district = zoom_contract(9, k_min=5)
    assert not can_render(_tile(count=9, cell_deg=0.01), district)
    assert can_render(_tile(count=10, cell_deg=0.01), district)


def test_missing_window_end_is_stale():
    tile = _tile()
    tile.window_end = None
    assert render_decision(tile, zoom_contract(5)) == (False, "stale")


def test_safety_switch_checked_before_k():
    city = zoom_contract(5)
    assert render_decision(_tile(count=1), city, safety=SafetyState(disabled_cities=["london"])) == (
        False,
        "safety_switch",
    )
    assert not can_render(_tile(category="queer"), city, safety=SafetyState(disabled_categories=["queer"]))
    assert not can_render(_tile(), city, safety=SafetyState(global_disabled=True))
    assert can_render(_tile(city="berlin"), city, safety=SafetyState(disabled_cities=["london"]))


def test_filter_renderable_tiles_keeps_input_order():
    tiles = [_tile(count=20, cell="b"), _tile(count=1, cell="x"), _tile(count=6, cell="a")]
    kept = filter_renderable_tiles(tiles, zoom_contract(5))
    assert [t.cell_id for t in kept] == ["b", "a"]


def test_public_tile_bands_counts():
    payload = public_tile(_tile(count=12), zoom_contract(5, k_min=5))
    assert payload["count_band"] == 10
    assert payload["intensity"] == 0.24
    assert "user_count" not in payload
    assert public_tile(_tile(count=80), zoom_contract(5, k_min=5))["intensity"] == 1.0


def test_heat_tile_from_row_parses_strings():
    end = utcnow()
    tile = HeatTile.from_row(
        {
            "city": "london",
            "cell_id": "0.1:1:2",
            "lat": "51.5",
            "lng": "-0.1",
            "cell_deg": "0.1",
            "count": "9",
            "window_start": iso(end - timedelta(minutes=15)),
            "window_end": iso(end),
        }
    )
    assert tile.user_count == 9
    assert tile.cell_deg == 0.1
    assert tile.window_end == end


def test_tile_without_grid_size_is_never_rendered():
    assert render_decision(_tile(count=50, cell_deg=None), zoom_contract(5)) == (False, "too_fine")
    assert render_decision(_tile(count=50, cell_deg=None), zoom_contract(0)) == (False, "too_fine")

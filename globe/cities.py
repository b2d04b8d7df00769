from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from globe.geo import normalize_point


class CityBounds(NamedTuple):
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng


# Bounding boxes of the cities the globe serves. Boxes must not overlap:
# a point belongs to at most one city so the kill switch can always name it.
CITY_BOUNDS: Dict[str, CityBounds] = {
    "london": CityBounds(51.28, 51.70, -0.52, 0.34),
    "manchester": CityBounds(53.34, 53.57, -2.43, -2.05),
    "brighton": CityBounds(50.79, 50.89, -0.25, -0.01),
    "paris": CityBounds(48.81, 48.91, 2.22, 2.47),
    "amsterdam": CityBounds(52.27, 52.43, 4.73, 5.07),
    "berlin": CityBounds(52.33, 52.68, 13.08, 13.77),
    "barcelona": CityBounds(41.32, 41.47, 2.05, 2.23),
    "new_york": CityBounds(40.49, 40.92, -74.26, -73.70),
}


def normalize_city(city: Any) -> Optional[str]:
    val = str(city or "").strip().lower().replace(" ", "_").replace("-", "_")
    return val or None


def city_bounds(city: Any) -> Optional[CityBounds]:
    return CITY_BOUNDS.get(normalize_city(city) or "")


def city_for_point(lat: float, lng: float) -> Optional[str]:
    for name, bounds in CITY_BOUNDS.items():
        if bounds.contains(lat, lng):
            return name
    return None


def rows_in_city(rows: Iterable[Dict[str, Any]], city: str) -> List[Dict[str, Any]]:
    """Rows whose location falls inside the city's box; rows without one are dropped."""
    bounds = city_bounds(city)
    if bounds is None:
        return []
    out = []
    for row in rows or []:
        pt = normalize_point(row) if isinstance(row, dict) else None
        if pt is not None and bounds.contains(pt.lat, pt.lng):
            out.append(row)
    return out


__all__ = ["CityBounds", "CITY_BOUNDS", "normalize_city", "city_bounds", "city_for_point", "rows_in_city"]

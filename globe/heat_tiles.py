import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from globe.clock import iso, parse_ts, utcnow
from globe.geo import cell_center, cell_id, normalize_point

logger = logging.getLogger(__name__)


def window_bounds(ts: Any, window_seconds: int) -> Tuple[datetime, datetime]:
    """Aligned [start, end) window containing ts."""
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")
    moment = parse_ts(ts) or utcnow()
    epoch = moment.timestamp()
    start = math.floor(epoch / window_seconds) * window_seconds
    return (
        datetime.fromtimestamp(start, tz=timezone.utc),
        datetime.fromtimestamp(start + window_seconds, tz=timezone.utc),
    )


def _epoch(val: Any) -> float:
    dt = parse_ts(val)
    return dt.timestamp() if dt else float("nan")


def _frame(rows: Iterable[Dict[str, Any]]) -> pd.DataFrame:
    records = []
    for row in rows or []:
        if not isinstance(row, dict):
            continue
        pt = normalize_point(row)
        user_id = row.get("user_id") or row.get("auth_user_id")
        if pt is None or not user_id:
            continue
        records.append(
            {
                "user_id": str(user_id),
                "lat": pt.lat,
                "lng": pt.lng,
                "seen_at": _epoch(row.get("updated_at") or row.get("created_at") or row.get("last_loc_ts")),
                "expires_at": _epoch(row.get("expires_at")),
            }
        )
    return pd.DataFrame.from_records(records, columns=["user_id", "lat", "lng", "seen_at", "expires_at"])


def aggregate_heat_tiles(
    rows: Iterable[Dict[str, Any]],
    city: str,
    cell_deg: float,
    window_seconds: int,
    k_min: int,
    now: Optional[datetime] = None,
    category: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Bin presence rows into grid cells for the current aligned window and
    count distinct live users per cell.

    A row is live during the window when it was seen before the window ends
    and has not expired before it starts; rows without expires_at stay live
    for window_seconds after they were seen. Cells under k_min are emitted
    with k_threshold_met=False and no count.
    """
    if cell_deg <= 0:
        raise ValueError("cell_deg must be positive")
    if k_min < 1:
        raise ValueError("k_min must be >= 1")
    now = parse_ts(now) or utcnow()
    start, end = window_bounds(now, window_seconds)

    df = _frame(rows)
    if df.empty:
        return []

    df = df[df["seen_at"].notna()]
    expiry = df["expires_at"].fillna(df["seen_at"] + window_seconds)
    live = (df["seen_at"] < end.timestamp()) & (expiry >= start.timestamp())
    df = df[live]
    if df.empty:
        return []

    df = df.assign(
        cell_row=np.floor((df["lat"] + 90.0) / cell_deg).astype(int),
        cell_col=np.floor((df["lng"] + 180.0) / cell_deg).astype(int),
    )
    counts = df.groupby(["cell_row", "cell_col"])["user_id"].nunique()

    computed_at = iso(now)
    out: List[Dict[str, Any]] = []
    for (row_idx, col_idx), n_users in counts.items():
        centre = cell_center(int(row_idx), int(col_idx), cell_deg)
        met = int(n_users) >= k_min
        out.append(
            {
                "city": city,
                "cell_id": cell_id(int(row_idx), int(col_idx), cell_deg),
                "cell_deg": cell_deg,
                "lat": centre.lat,
                "lng": centre.lng,
                "window_start": iso(start),
                "window_end": iso(end),
                "user_count": int(n_users) if met else None,
                "k_threshold_met": met,
                "category": category,
                "computed_at": computed_at,
            }
        )
    out.sort(key=lambda r: r["cell_id"])
    logger.info(
        "[Globe] heat tiles city=%s cells=%s met=%s window=%s",
        city,
        len(out),
        sum(1 for r in out if r["k_threshold_met"]),
        out[0]["window_start"] if out else None,
    )
    return out


__all__ = ["window_bounds", "aggregate_heat_tiles"]

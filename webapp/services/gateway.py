import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpcore
import httpx

from globe.clock import iso, utcnow
from globe.nearby import rank_candidates_locally

logger = logging.getLogger(__name__)

USER_TABLES = ("User", "users")
PRESENCE_LOCATIONS_TABLE = "user_presence_locations"
HEAT_TILES_TABLE = "globe_heat_tiles"

Filter = Tuple[str, str, Any]

# ----------------------------
# In-memory cache (bounded)
# ----------------------------
_CACHE_STORE: Dict[str, Dict[str, Any]] = {}
_CACHE_MAX_KEYS = 256


def _cache_get(key: str):
    return _CACHE_STORE.get(key)


def _cache_set(key: str, data: Any):
    if key not in _CACHE_STORE and len(_CACHE_STORE) >= _CACHE_MAX_KEYS:
        oldest_key = min(_CACHE_STORE.keys(), key=lambda k: _CACHE_STORE[k]["time"])
        _CACHE_STORE.pop(oldest_key, None)
    _CACHE_STORE[key] = {"time": time.time(), "data": data}


def _cache_del_prefix(prefix: str):
    for k in list(_CACHE_STORE.keys()):
        if k.startswith(prefix):
            _CACHE_STORE.pop(k, None)


def cache_clear():
    _CACHE_STORE.clear()


def _error_text(exc: BaseException) -> str:
    return str(getattr(exc, "message", None) or exc)


def is_missing_function_error(exc: BaseException) -> bool:
    code = str(getattr(exc, "code", "") or "")
    msg = _error_text(exc).lower()
    if code in ("PGRST202", "42883"):
        return True
    return "function" in msg and ("does not exist" in msg or "could not find" in msg)


def is_missing_table_error(exc: BaseException) -> bool:
    code = str(getattr(exc, "code", "") or "")
    msg = _error_text(exc).lower()
    if code in ("PGRST205", "42P01", "42703"):
        return True
    return "schema cache" in msg or "could not find the table" in msg or "does not exist" in msg


class DataGateway:
    """
    Async facade over the synchronous supabase client.
    Transport errors are retried with backoff; logic errors propagate.
    Every instance shares one process-wide lock, so per-request gateways
    still serialise access to the client.
    """

    _lock: Optional[asyncio.Lock] = None

    def __init__(self, db_client=None):
        if db_client is None:
            from database.store import get_supabase

            db_client = get_supabase()
        self.db = db_client
        if DataGateway._lock is None:
            DataGateway._lock = asyncio.Lock()
        self._lock = DataGateway._lock
        self.last_degraded: bool = False

    # ------------------------------------------------------------------
    # Core retry + cache helpers
    # ------------------------------------------------------------------
    async def _retry_db(self, func: Callable[[], Awaitable[Any]], retries: int = 3, base_sleep: float = 0.3):
        last_error = None
        for i in range(retries):
            try:
                return await func()
            except (
                httpx.RemoteProtocolError,
                httpx.ReadError,
                httpcore.RemoteProtocolError,
                httpcore.ReadError,
                httpx.ReadTimeout,
                httpx.ConnectError,
                httpcore.ConnectError,
                httpx.PoolTimeout,
                OSError,
            ) as e:
                last_error = e
                wait_time = base_sleep * (2**i)
                logger.warning("⚠️ [Supabase Retry %s/%s] %s | backoff=%.2fs", i + 1, retries, repr(e), wait_time)
                await asyncio.sleep(wait_time)
            except Exception as e:
                logger.debug("[DB_LOGIC_ERROR] %s", repr(e))
                raise

        logger.error("❌ [OPS_DEGRADED][DB_RETRY_FAILED] %s", repr(last_error))
        return None

    async def _cached_call(self, key: str, ttl: float, func: Callable[[], Awaitable[Any]]) -> Tuple[Any, bool]:
        now = time.time()
        cached = _cache_get(key)
        if cached and (now - cached["time"] < ttl):
            self.last_degraded = False
            return cached["data"], False

        res = await self._retry_db(func)
        if res is None:
            if cached:
                logger.warning("⚠️ [OPS_DEGRADED] Serving STALE cache for key=%s", key)
                self.last_degraded = True
                return cached["data"], True
            self.last_degraded = True
            return [], True

        data = res.data if hasattr(res, "data") else res
        _cache_set(key, data)
        self.last_degraded = False
        return data, False

    def _build_select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Sequence[Filter]] = None,
        or_filter: Optional[str] = None,
        order: Optional[Tuple[str, bool]] = None,
        limit: Optional[int] = None,
    ):
        query = self.db.table(table).select(columns)
        for op, column, value in filters or []:
            query = getattr(query, op)(column, value)
        if or_filter:
            query = query.or_(or_filter)
        if order:
            query = query.order(order[0], desc=order[1])
        if limit:
            query = query.limit(limit)
        return query

    # ------------------------------------------------------------------
    # Generic table access
    # ------------------------------------------------------------------
    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Optional[Sequence[Filter]] = None,
        or_filter: Optional[str] = None,
        order: Optional[Tuple[str, bool]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        async def _call():
            query = self._build_select(table, columns, filters, or_filter, order, limit)
            return await asyncio.to_thread(query.execute)

        async with self._lock:
            res = await self._retry_db(_call)
            if res is None:
                raise RuntimeError(f"[SELECT_FAILED] {table} connection error")
            return res.data or []

    async def cached_select(
        self,
        cache_key: str,
        ttl: float,
        table: str,
        columns: str = "*",
        filters: Optional[Sequence[Filter]] = None,
        or_filter: Optional[str] = None,
        order: Optional[Tuple[str, bool]] = None,
        limit: Optional[int] = None,
    ) -> Tuple[List[Dict[str, Any]], bool]:
        async def _call():
            query = self._build_select(table, columns, filters, or_filter, order, limit)
            return await asyncio.to_thread(query.execute)

        async with self._lock:
            return await self._cached_call(cache_key, ttl, _call)

    async def insert(self, table: str, data: Any) -> Any:
        async def _call():
            return await asyncio.to_thread(lambda: self.db.table(table).insert(data).execute())

        async with self._lock:
            res = await self._retry_db(_call)
            if res is None:
                raise RuntimeError(f"[INSERT_FAILED] {table} connection error")
            _cache_del_prefix(f"{table}:")
            return res.data

    async def upsert(self, table: str, data: Any, on_conflict: str) -> Any:
        async def _call():
            return await asyncio.to_thread(
                lambda: self.db.table(table).upsert(data, on_conflict=on_conflict).execute()
            )

        async with self._lock:
            res = await self._retry_db(_call)
            if res is None:
                raise RuntimeError(f"[UPSERT_FAILED] {table} connection error")
            _cache_del_prefix(f"{table}:")
            return res.data

    async def update(self, table: str, patch: Dict[str, Any], filters: Sequence[Filter]) -> Any:
        async def _call():
            query = self.db.table(table).update(patch)
            for op, column, value in filters:
                query = getattr(query, op)(column, value)
            return await asyncio.to_thread(query.execute)

        async with self._lock:
            res = await self._retry_db(_call)
            if res is None:
                raise RuntimeError(f"[UPDATE_FAILED] {table} connection error")
            _cache_del_prefix(f"{table}:")
            return res.data

    async def delete(self, table: str, filters: Sequence[Filter]) -> Any:
        async def _call():
            query = self.db.table(table).delete()
            for op, column, value in filters:
                query = getattr(query, op)(column, value)
            return await asyncio.to_thread(query.execute)

        async with self._lock:
            res = await self._retry_db(_call)
            if res is None:
                raise RuntimeError(f"[DELETE_FAILED] {table} connection error")
            _cache_del_prefix(f"{table}:")
            return res.data

    async def rpc(self, func_name: str, params: Dict[str, Any]) -> Any:
        async def _call():
            return await asyncio.to_thread(lambda: self.db.rpc(func_name, params).execute())

        async with self._lock:
            res = await self._retry_db(_call)
            if res is None:
                raise RuntimeError(f"[RPC_FAILED] {func_name} connection error")
            return res.data

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    async def get_user(self, access_token: str) -> Optional[Dict[str, Any]]:
        try:
            resp = await asyncio.to_thread(self.db.auth.get_user, access_token)
        except Exception as e:
            logger.info("[Auth] token rejected: %s", _error_text(e))
            return None
        user = getattr(resp, "user", None)
        if user is None:
            return None
        return {
            "id": getattr(user, "id", None),
            "email": getattr(user, "email", None),
            "user_metadata": getattr(user, "user_metadata", None) or {},
        }

    # ------------------------------------------------------------------
    # Profiles + locations
    # ------------------------------------------------------------------
    async def get_viewer_profile(self, auth_user_id: str, email: Optional[str]) -> Tuple[str, Optional[Dict[str, Any]]]:
        or_filter = f"auth_user_id.eq.{auth_user_id}"
        if email:
            or_filter += f",email.eq.{email}"
        for table in USER_TABLES:
            try:
                rows = await self.select(
                    table,
                    columns="id, email, auth_user_id, subscription_tier, default_travel_mode, privacy_hide_proximity",
                    or_filter=or_filter,
                    limit=1,
                )
            except Exception as e:
                logger.debug("[Profile] %s lookup failed: %s", table, _error_text(e))
                continue
            if rows:
                return table, rows[0]
        return USER_TABLES[0], None

    async def upsert_presence_location(
        self,
        auth_user_id: str,
        lat: Optional[float],
        lng: Optional[float],
        accuracy_m: Optional[int],
        hide: bool,
    ) -> bool:
        row = {
            "auth_user_id": auth_user_id,
            "lat": None if hide else lat,
            "lng": None if hide else lng,
            "accuracy_m": accuracy_m,
            "updated_at": iso(utcnow()),
        }
        try:
            await self.upsert(PRESENCE_LOCATIONS_TABLE, row, on_conflict="auth_user_id")
            return True
        except Exception as e:
            logger.warning("[Nearby] presence location upsert failed: %s", _error_text(e))
            return False

    async def upsert_user_location(
        self,
        auth_user: Dict[str, Any],
        lat: Optional[float],
        lng: Optional[float],
        accuracy_m: Optional[int],
        hide: bool,
    ) -> Optional[str]:
        now_iso = iso(utcnow())
        row = {
            "email": auth_user.get("email"),
            "auth_user_id": auth_user.get("id"),
            "is_online": not hide,
            "last_loc_ts": now_iso,
            "loc_accuracy_m": accuracy_m,
            "updated_date": now_iso,
            "last_lat": None if hide else lat,
            "last_lng": None if hide else lng,
            "lat": None if hide else lat,
            "lng": None if hide else lng,
        }
        for table in USER_TABLES:
            try:
                await self.upsert(table, row, on_conflict="email")
                return table
            except Exception as e:
                logger.debug("[Nearby] %s location upsert failed: %s", table, _error_text(e))
        return None

    async def fetch_profiles(self, user_ids: Sequence[Any]) -> Dict[str, Dict[str, Any]]:
        ids = sorted({str(v) for v in user_ids if v})
        if not ids:
            return {}
        for table in USER_TABLES:
            id_column = "id" if table == "users" else "auth_user_id"
            try:
                rows = await self.select(table, filters=[("in_", id_column, ids)])
            except Exception as e:
                if is_missing_table_error(e):
                    continue
                logger.warning("[Nearby] profile fetch failed on %s: %s", table, _error_text(e))
                continue
            return {str(r.get("auth_user_id") or r.get("id")): r for r in rows}
        return {}

    async def nearby_candidates(
        self,
        lat: float,
        lng: float,
        radius_m: int,
        limit: int,
        exclude_user_id: str,
        max_age_seconds: int = 900,
    ) -> Tuple[List[Dict[str, Any]], str]:
        """
        Secure PostGIS RPC first, legacy RPC when the secure one is not
        deployed, and a local distance search when neither exists.
        """
        params = {
            "p_viewer_lat": lat,
            "p_viewer_lng": lng,
            "p_radius_m": radius_m,
            "p_limit": limit,
            "p_exclude_user_id": exclude_user_id,
        }
        try:
            rows = await self.rpc("nearby_candidates_secure", {**params, "p_max_age_seconds": max_age_seconds})
            return list(rows or []), "nearby_candidates_secure"
        except Exception as e:
            if not is_missing_function_error(e):
                raise
            logger.warning("[Nearby] secure RPC missing, falling back: %s", _error_text(e))

        try:
            rows = await self.rpc("nearby_candidates", params)
            return list(rows or []), "nearby_candidates"
        except Exception as e:
            if not is_missing_function_error(e):
                raise
            logger.warning("[Nearby] legacy RPC missing, ranking locally: %s", _error_text(e))

        cutoff = iso(utcnow() - timedelta(seconds=max_age_seconds))
        rows = await self.select(
            PRESENCE_LOCATIONS_TABLE,
            filters=[("gt", "updated_at", cutoff), ("neq", "auth_user_id", exclude_user_id)],
        )
        ranked = rank_candidates_locally(
            (lat, lng), rows, radius_m, limit, exclude_user_id=exclude_user_id, max_age_seconds=max_age_seconds
        )
        return ranked, "local"

    # ------------------------------------------------------------------
    # Routing cache + rate limit
    # ------------------------------------------------------------------
    async def routing_cache_get(self, cache_keys: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        if not cache_keys:
            return {}
        try:
            rows = await self.select(
                "routing_cache",
                columns="cache_key, duration_seconds, distance_meters, expires_at",
                filters=[("in_", "cache_key", list(cache_keys)), ("gt", "expires_at", iso(utcnow()))],
            )
        except Exception as e:
            logger.warning("[Routing] cache read failed: %s", _error_text(e))
            return {}
        return {r["cache_key"]: r for r in rows if r.get("cache_key")}

    async def routing_cache_put(self, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        try:
            await self.upsert("routing_cache", rows, on_conflict="cache_key")
        except Exception as e:
            logger.warning("[Routing] cache write failed: %s", _error_text(e))

    async def check_routing_rate_limit(
        self,
        bucket_key: str,
        user_id: str,
        ip: Optional[str],
        window_seconds: int = 60,
        max_requests: int = 30,
    ) -> Optional[bool]:
        """Best effort: None when the limiter itself is unavailable."""
        try:
            data = await self.rpc(
                "check_routing_rate_limit",
                {
                    "p_bucket_key": bucket_key,
                    "p_user_id": user_id,
                    "p_ip": ip,
                    "p_window_seconds": window_seconds,
                    "p_max_requests": max_requests,
                },
            )
        except Exception as e:
            logger.warning("[Routing] rate limit check failed: %s", _error_text(e))
            return None
        row = data[0] if isinstance(data, list) and data else data
        if isinstance(row, dict) and "allowed" in row:
            return bool(row["allowed"])
        return None

    # ------------------------------------------------------------------
    # Globe
    # ------------------------------------------------------------------
    async def active_presence(self, mode: Optional[str] = None, limit: int = 5000) -> List[Dict[str, Any]]:
        filters: List[Filter] = [("gt", "expires_at", iso(utcnow()))]
        if mode:
            filters.append(("eq", "mode", mode))
        return await self.select("presence", filters=filters, limit=limit)

    async def heat_tiles(self, city: str, limit: int = 200) -> Tuple[List[Dict[str, Any]], bool]:
        return await self.cached_select(
            f"{HEAT_TILES_TABLE}:{city}:{limit}",
            5.0,
            HEAT_TILES_TABLE,
            filters=[("eq", "city", city), ("eq", "k_threshold_met", True)],
            order=("window_end", True),
            limit=limit,
        )

    async def upsert_heat_tiles(self, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        await self.upsert(HEAT_TILES_TABLE, rows, on_conflict="city,cell_id,window_start")
        return len(rows)

    # ------------------------------------------------------------------
    # Settings + audit
    # ------------------------------------------------------------------
    async def get_setting(self, category: str) -> Optional[Dict[str, Any]]:
        rows = await self.select("system_settings", filters=[("eq", "category", category)], limit=1)
        if not rows:
            return None
        return rows[0].get("value")

    async def put_setting(self, category: str, value: Dict[str, Any]) -> None:
        await self.upsert(
            "system_settings",
            {"category": category, "value": value, "updated_at": iso(utcnow())},
            on_conflict="category",
        )

    async def audit(self, entry: Dict[str, Any]) -> None:
        await self.insert("audit_log", entry)


__all__ = [
    "DataGateway",
    "USER_TABLES",
    "cache_clear",
    "is_missing_function_error",
    "is_missing_table_error",
]

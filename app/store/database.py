from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
import logging
import os
from typing import Any, Mapping, Optional, Protocol, Sequence
import uuid

import httpx

from app.settings import env_float


logger = logging.getLogger("skincare-sanctuary.database")


Row = dict[str, Any]
Filters = Mapping[str, Any]


class DatabaseError(Exception):
    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class Database(Protocol):
    async def select(
        self,
        table: str,
        *,
        filters: Optional[Filters] = None,
        order: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]: ...

    async def insert(self, table: str, rows: Sequence[Row]) -> list[Row]: ...

    async def update(self, table: str, values: Row, *, filters: Filters) -> list[Row]: ...

    async def upsert(self, table: str, rows: Sequence[Row], *, on_conflict: Sequence[str]) -> list[Row]: ...

    async def delete(self, table: str, *, filters: Filters) -> int: ...

    async def close(self) -> None: ...


async def select_one(db: Database, table: str, *, filters: Filters) -> Optional[Row]:
    rows = await db.select(table, filters=filters, limit=1)
    return rows[0] if rows else None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _matches(row: Row, filters: Optional[Filters]) -> bool:
    if not filters:
        return True
    for key, expected in filters.items():
        if row.get(key) != expected:
            return False
    return True


def _sort_key(value: Any) -> tuple[int, Any]:
    # None sorts last ascending, like Postgres.
    if value is None:
        return (1, "")
    return (0, value)


class InMemoryDatabase(Database):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._tables: dict[str, list[Row]] = {}

    async def select(
        self,
        table: str,
        *,
        filters: Optional[Filters] = None,
        order: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]:
        async with self._lock:
            rows = [copy.deepcopy(r) for r in self._tables.get(table, []) if _matches(r, filters)]
        if order:
            rows.sort(key=lambda r: _sort_key(r.get(order)), reverse=descending)
        if limit is not None:
            rows = rows[: max(0, limit)]
        return rows

    async def insert(self, table: str, rows: Sequence[Row]) -> list[Row]:
        created: list[Row] = []
        now = _now_iso()
        async with self._lock:
            bucket = self._tables.setdefault(table, [])
            for row in rows:
                record = {"id": uuid.uuid4().hex, "created_at": now, "updated_at": now, **row}
                bucket.append(record)
                created.append(copy.deepcopy(record))
        return created

    async def update(self, table: str, values: Row, *, filters: Filters) -> list[Row]:
        updated: list[Row] = []
        async with self._lock:
            for row in self._tables.get(table, []):
                if _matches(row, filters):
                    row.update(values)
                    if "updated_at" not in values:
                        row["updated_at"] = _now_iso()
                    updated.append(copy.deepcopy(row))
        return updated

    async def upsert(self, table: str, rows: Sequence[Row], *, on_conflict: Sequence[str]) -> list[Row]:
        out: list[Row] = []
        now = _now_iso()
        async with self._lock:
            bucket = self._tables.setdefault(table, [])
            for row in rows:
                conflict = {k: row.get(k) for k in on_conflict}
                existing = next((r for r in bucket if _matches(r, conflict)), None)
                if existing is not None:
                    existing.update(row)
                    existing["updated_at"] = now
                    out.append(copy.deepcopy(existing))
                    continue
                record = {"id": uuid.uuid4().hex, "created_at": now, "updated_at": now, **row}
                bucket.append(record)
                out.append(copy.deepcopy(record))
        return out

    async def delete(self, table: str, *, filters: Filters) -> int:
        async with self._lock:
            bucket = self._tables.get(table, [])
            kept = [r for r in bucket if not _matches(r, filters)]
            removed = len(bucket) - len(kept)
            self._tables[table] = kept
        return removed

    async def close(self) -> None:
        return None


def _filter_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


def _filter_params(filters: Optional[Filters]) -> dict[str, str]:
    return {key: _filter_value(value) for key, value in (filters or {}).items()}


class PostgrestDatabase(Database):
    """Hosted Postgres through its PostgREST endpoint, with the service-role key."""

    def __init__(self, *, base_url: str, service_key: str, timeout_s: float = 10.0) -> None:
        self._base_url = f"{base_url.rstrip('/')}/rest/v1"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout_s,
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Content-Type": "application/json",
            },
        )

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[dict[str, str]] = None,
        json_body: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        headers = {"Prefer": prefer} if prefer else None
        try:
            res = await self._client.request(method, f"/{table}", params=params, json=json_body, headers=headers)
        except httpx.HTTPError as exc:
            raise DatabaseError(f"{method} {table} failed", details=str(exc)) from exc

        try:
            data = res.json() if res.content else None
        except Exception:
            data = {"raw": res.text}

        if res.status_code >= 400:
            logger.warning("postgrest_request_failed method=%s table=%s status=%s", method, table, res.status_code)
            message = data.get("message") if isinstance(data, dict) else None
            raise DatabaseError(message or f"{method} {table} returned {res.status_code}", details=data)
        return data

    async def select(
        self,
        table: str,
        *,
        filters: Optional[Filters] = None,
        order: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]:
        params = {"select": "*", **_filter_params(filters)}
        if order:
            params["order"] = f"{order}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)
        data = await self._request("GET", table, params=params)
        return data if isinstance(data, list) else []

    async def insert(self, table: str, rows: Sequence[Row]) -> list[Row]:
        if not rows:
            return []
        data = await self._request("POST", table, json_body=list(rows), prefer="return=representation")
        return data if isinstance(data, list) else []

    async def update(self, table: str, values: Row, *, filters: Filters) -> list[Row]:
        data = await self._request(
            "PATCH",
            table,
            params=_filter_params(filters),
            json_body=values,
            prefer="return=representation",
        )
        return data if isinstance(data, list) else []

    async def upsert(self, table: str, rows: Sequence[Row], *, on_conflict: Sequence[str]) -> list[Row]:
        if not rows:
            return []
        data = await self._request(
            "POST",
            table,
            params={"on_conflict": ",".join(on_conflict)},
            json_body=list(rows),
            prefer="resolution=merge-duplicates,return=representation",
        )
        return data if isinstance(data, list) else []

    async def delete(self, table: str, *, filters: Filters) -> int:
        data = await self._request("DELETE", table, params=_filter_params(filters), prefer="return=representation")
        return len(data) if isinstance(data, list) else 0

    async def close(self) -> None:
        await self._client.aclose()


class PersistentDatabase(Database):
    def __init__(
        self,
        *,
        supabase_url: Optional[str] = None,
        service_key: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ) -> None:
        self._supabase_url = supabase_url
        self._service_key = service_key
        self._timeout_s = timeout_s
        self._backend: Database = InMemoryDatabase()
        self._backend_kind = "memory"

    @property
    def backend_kind(self) -> str:
        return self._backend_kind

    async def initialize(self) -> None:
        url = (self._supabase_url or os.getenv("SUPABASE_URL") or "").strip() or None
        key = (self._service_key or os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "").strip() or None
        timeout_s = self._timeout_s if self._timeout_s is not None else env_float("DATABASE_TIMEOUT_S", 10.0)

        if not url or not key:
            self._backend = InMemoryDatabase()
            self._backend_kind = "memory"
            logger.info("database_backend=memory reason=missing_SUPABASE_URL_or_key")
            return

        self._backend = PostgrestDatabase(base_url=url, service_key=key, timeout_s=timeout_s)
        self._backend_kind = "postgrest"
        logger.info("database_backend=postgrest")

    async def select(
        self,
        table: str,
        *,
        filters: Optional[Filters] = None,
        order: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]:
        return await self._backend.select(table, filters=filters, order=order, descending=descending, limit=limit)

    async def insert(self, table: str, rows: Sequence[Row]) -> list[Row]:
        return await self._backend.insert(table, rows)

    async def update(self, table: str, values: Row, *, filters: Filters) -> list[Row]:
        return await self._backend.update(table, values, filters=filters)

    async def upsert(self, table: str, rows: Sequence[Row], *, on_conflict: Sequence[str]) -> list[Row]:
        return await self._backend.upsert(table, rows, on_conflict=on_conflict)

    async def delete(self, table: str, *, filters: Filters) -> int:
        return await self._backend.delete(table, filters=filters)

    async def close(self) -> None:
        await self._backend.close()

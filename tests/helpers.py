from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from nearby.core.contracts import DiscoveryQuery, LatLng

CENTER = LatLng(lat=40.0, lng=-73.0)
NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def north_of(center: LatLng, meters: float) -> tuple[float, float]:
    return center.lat + meters / 111_320.0, center.lng


class FakeSupa:
    """
    In-memory stand-in for SupaRest. Rows are returned as stored (filters are
    recorded, not applied); queued errors are raised once each, `broken`
    errors on every call.
    """

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.rpcs: dict[str, Any] = {}
        self.errors: dict[str, list[BaseException]] = {}
        self.broken: dict[str, BaseException] = {}
        self.calls: list[dict[str, Any]] = []

    def fail(self, name: str, *errors: BaseException) -> None:
        self.errors.setdefault(name, []).extend(errors)

    def _maybe_raise(self, name: str) -> None:
        if name in self.broken:
            raise self.broken[name]
        queue = self.errors.get(name)
        if queue:
            raise queue.pop(0)

    def selects(self, table: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["op"] == "select" and c["table"] == table]

    def select(self, table, columns, *, filters=(), order=None, limit=None):
        self.calls.append(
            {
                "op": "select",
                "table": table,
                "columns": list(columns) if not isinstance(columns, str) else columns.split(","),
                "filters": list(filters),
                "order": order,
                "limit": limit,
            }
        )
        self._maybe_raise(table)
        return [dict(r) for r in self.tables.get(table, [])]

    def rpc(self, fn, payload):
        self.calls.append({"op": "rpc", "fn": fn, "payload": dict(payload)})
        self._maybe_raise(f"rpc:{fn}")
        return [dict(r) for r in self.rpcs.get(fn, [])]

    def upsert(self, table, rows, *, on_conflict):
        self.calls.append({"op": "upsert", "table": table, "rows": rows, "on_conflict": on_conflict})
        self._maybe_raise(f"upsert:{table}")
        existing = self.tables.setdefault(table, [])
        for row in rows:
            existing[:] = [r for r in existing if r.get(on_conflict) != row.get(on_conflict)]
            existing.append(dict(row))


class MutableClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def overpass_transport(payload: Optional[dict] = None, status: int = 200) -> httpx.MockTransport:
    body = payload if payload is not None else {"elements": []}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler)


def make_query(limit: int = 20, radius_m: Optional[float] = 2000, **filters: Any) -> DiscoveryQuery:
    return DiscoveryQuery(center=CENTER, radius_m=radius_m, limit=limit, filters=filters)

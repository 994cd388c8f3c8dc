from __future__ import annotations

import re
from typing import Any, Iterable, Optional, Sequence

import httpx

from nearby.core.errors import SupaError
from nearby.core.settings import settings

Filter = tuple[str, str]

_MISSING_COLUMN_CODES = {"42703", "PGRST204"}
_MISSING_RELATION_CODES = {"PGRST200", "PGRST201"}
_MISSING_TABLE_CODES = {"42P01", "PGRST205"}


# ──────────────────────────────────────────────────────────────
# PostgREST filter helpers
# ──────────────────────────────────────────────────────────────

def eq(column: str, value: Any) -> Filter:
    return (column, f"eq.{value}")


def gte(column: str, value: Any) -> Filter:
    return (column, f"gte.{value}")


def lte(column: str, value: Any) -> Filter:
    return (column, f"lte.{value}")


def not_null(column: str) -> Filter:
    return (column, "not.is.null")


def in_(column: str, values: Iterable[Any]) -> Filter:
    joined = ",".join(str(v) for v in values)
    return (column, f"in.({joined})")


# ──────────────────────────────────────────────────────────────
# Schema error classification
# ──────────────────────────────────────────────────────────────

def _haystack(err: BaseException) -> str:
    if isinstance(err, SupaError):
        return err.haystack()
    return str(err).lower()


def _code(err: BaseException) -> Optional[str]:
    return getattr(err, "code", None)


def _mentions(haystack: str, name: str) -> bool:
    return re.search(rf"(?<![a-z0-9_]){re.escape(name.lower())}(?![a-z0-9_])", haystack) is not None


def is_missing_column(err: BaseException, column: str) -> bool:
    """True for a "column ... does not exist" class of error naming `column`."""
    hay = _haystack(err)
    if not _mentions(hay, column):
        return False
    if _code(err) in _MISSING_COLUMN_CODES:
        return True
    return "does not exist" in hay or "could not find" in hay


def is_missing_relationship(err: BaseException, relation: str) -> bool:
    hay = _haystack(err)
    if not _mentions(hay, relation):
        return False
    return _code(err) in _MISSING_RELATION_CODES or "relationship" in hay


def is_missing_table(err: BaseException, table: str) -> bool:
    hay = _haystack(err)
    if not _mentions(hay, table):
        return False
    if _code(err) in _MISSING_TABLE_CODES:
        return True
    return "does not exist" in hay or "could not find the table" in hay


# ──────────────────────────────────────────────────────────────
# Client
# ──────────────────────────────────────────────────────────────

class SupaRest:
    """
    Minimal Supabase REST (PostgREST) client:
      - select rows with filters/order/limit
      - call RPC functions
      - upsert rows with on_conflict

    Uses the service role key (bypasses RLS). Errors surface as SupaError
    carrying the PostgREST code/message/details/hint.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        key: Optional[str] = None,
        *,
        timeout_s: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        base_url = base_url or settings.supa_url
        key = key or settings.supa_service_role_key
        if not base_url or not key:
            raise RuntimeError("Supabase not configured (SUPA_URL / SUPA_SERVICE_ROLE_KEY)")
        self.base = base_url.rstrip("/")
        self.key = key
        self.timeout_s = float(timeout_s or settings.supa_timeout_s)
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_s, transport=self.transport)

    @staticmethod
    def _raise_for_error(resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        try:
            payload = resp.json()
        except ValueError:
            payload = (resp.text or "")[:800]
        raise SupaError.from_payload(payload, status=resp.status_code)

    def select(
        self,
        table: str,
        columns: Sequence[str] | str,
        *,
        filters: Sequence[Filter] = (),
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        select = columns if isinstance(columns, str) else ",".join(columns)
        params: list[tuple[str, str]] = [("select", select)]
        params.extend(filters)
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(max(1, int(limit)))))

        url = f"{self.base}/rest/v1/{table}"
        with self._client() as client:
            resp = client.get(url, headers=self._headers(), params=params)
        self._raise_for_error(resp)
        rows = resp.json()
        return rows if isinstance(rows, list) else []

    def rpc(self, fn: str, payload: dict[str, Any]) -> Any:
        url = f"{self.base}/rest/v1/rpc/{fn}"
        with self._client() as client:
            resp = client.post(url, headers=self._headers(), json=payload)
        self._raise_for_error(resp)
        return resp.json()

    def upsert(self, table: str, rows: list[dict[str, Any]], *, on_conflict: str) -> None:
        if not rows:
            return
        url = f"{self.base}/rest/v1/{table}?on_conflict={on_conflict}"
        headers = self._headers()
        headers["Prefer"] = "resolution=merge-duplicates,return=minimal"
        with self._client() as client:
            resp = client.post(url, headers=headers, json=rows)
        self._raise_for_error(resp)

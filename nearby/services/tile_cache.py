"""
Per-tile discovery cache.

A tile record is a JSON object  cache_key → CacheEntry  stored under the tile
key. Reads never raise; writes are best-effort and can be scheduled off the
request path.

Stores:
  SqliteTileStore  local `discovery_tiles` table (default)
  SupaTileStore    Supabase `place_tiles.discovery_cache` keyed by a configurable column
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import timedelta
from typing import Any, Dict, List, Optional, Protocol

from pydantic import ValidationError

from nearby.core.contracts import CacheEntry, DiscoveryResult, RankedVenue
from nearby.core.errors import SupaError
from nearby.core.settings import settings
from nearby.core.storage import ensure_schema, get_tile_record, put_tile_record
from nearby.core.supa import eq, is_missing_column, is_missing_table
from nearby.core.time import Clock, parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

TileRecord = Dict[str, Any]


class TileStore(Protocol):
    def load(self, tile_key: str) -> TileRecord: ...

    def save(self, tile_key: str, record: TileRecord) -> None: ...


# ──────────────────────────────────────────────────────────────
# Stores
# ──────────────────────────────────────────────────────────────

class SqliteTileStore:
    def __init__(self, conn: sqlite3.Connection, *, clock: Clock = utc_now) -> None:
        self.conn = conn
        self.clock = clock
        self._lock = threading.Lock()
        ensure_schema(conn)

    def load(self, tile_key: str) -> TileRecord:
        with self._lock:
            record = get_tile_record(self.conn, tile_key)
        return record if isinstance(record, dict) else {}

    def save(self, tile_key: str, record: TileRecord) -> None:
        with self._lock:
            put_tile_record(self.conn, tile_key=tile_key, updated_at=to_iso(self.clock()), record=record)


class SupaTileStore:
    """
    Tile records in `place_tiles.discovery_cache`.

    Keys are grid keys (`tile:{step}:{lat},{lng}`), not geohash-6 strings.
    Sharing the `geohash6` column with writers that store real geohashes
    means the two never hit each other's rows; point `key_column` at a
    dedicated column to keep them apart.
    """

    table = "place_tiles"
    record_column = "discovery_cache"

    def __init__(self, supa: Any, *, key_column: Optional[str] = None) -> None:
        self.supa = supa
        self.key_column = key_column or settings.discovery_tile_key_column

    def _schema_missing(self, err: SupaError) -> bool:
        return is_missing_column(err, self.record_column) or is_missing_table(err, self.table)

    def load(self, tile_key: str) -> TileRecord:
        try:
            rows = self.supa.select(
                self.table,
                [self.record_column],
                filters=[eq(self.key_column, tile_key)],
                limit=1,
            )
        except SupaError as err:
            if self._schema_missing(err):
                return {}
            raise
        if not rows:
            return {}
        record = rows[0].get(self.record_column)
        return record if isinstance(record, dict) else {}

    def save(self, tile_key: str, record: TileRecord) -> None:
        try:
            self.supa.upsert(
                self.table,
                [{self.key_column: tile_key, self.record_column: record}],
                on_conflict=self.key_column,
            )
        except SupaError as err:
            if self._schema_missing(err):
                logger.info("tile_cache_disabled table=%s column=%s", self.table, self.record_column)
                return
            raise


# ──────────────────────────────────────────────────────────────
# Cache
# ──────────────────────────────────────────────────────────────

def prune_record(record: TileRecord, max_entries: int) -> TileRecord:
    """Keep the `max_entries` most recently cached entries."""
    if len(record) <= max_entries:
        return record

    def _cached_at(item: tuple[str, Any]) -> float:
        value = item[1].get("cached_at") if isinstance(item[1], dict) else None
        dt = parse_iso(value)
        return dt.timestamp() if dt else 0.0

    ordered = sorted(record.items(), key=_cached_at)
    return dict(ordered[len(ordered) - max_entries:])


class TileCache:
    def __init__(
        self,
        store: TileStore,
        *,
        ttl_s: Optional[int] = None,
        max_entries: Optional[int] = None,
        max_items: Optional[int] = None,
        clock: Clock = utc_now,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.store = store
        self.ttl_s = int(ttl_s if ttl_s is not None else settings.discovery_cache_ttl_s)
        self.max_entries = int(max_entries if max_entries is not None else settings.discovery_max_cache_entries)
        self.max_items = int(max_items if max_items is not None else settings.discovery_max_cache_items)
        self.clock = clock
        self._executor = executor or ThreadPoolExecutor(
            max_workers=int(settings.discovery_cache_write_workers),
            thread_name_prefix="tile-cache",
        )
        self._write_lock = threading.Lock()
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

    def read(self, tile_key: str, cache_key: str) -> Optional[CacheEntry]:
        try:
            record = self.store.load(tile_key)
        except Exception as e:
            logger.warning("tile_cache_read_failed tile=%s err=%r", tile_key, e)
            return None

        raw = record.get(cache_key)
        if not isinstance(raw, dict):
            return None
        try:
            entry = CacheEntry.model_validate(raw)
        except ValidationError:
            return None

        expires_at = parse_iso(entry.expires_at)
        if expires_at is None or expires_at <= self.clock():
            return None
        return entry

    def build_entry(self, result: DiscoveryResult, venues: Optional[List[RankedVenue]] = None) -> CacheEntry:
        now = self.clock()
        return CacheEntry(
            cached_at=to_iso(now),
            expires_at=to_iso(now + timedelta(seconds=self.ttl_s)),
            items=result.items[: self.max_items],
            filter_support=result.filter_support,
            source_breakdown=result.source_breakdown,
            source=result.source,
            venues=venues[: self.max_items] if venues is not None else None,
        )

    def write(self, tile_key: str, cache_key: str, entry: CacheEntry) -> None:
        # Reload under the lock so concurrent writers in this process merge
        # rather than clobber each other's keys.
        try:
            with self._write_lock:
                record = dict(self.store.load(tile_key))
                record[cache_key] = entry.model_dump(mode="json")
                self.store.save(tile_key, prune_record(record, self.max_entries))
        except Exception as e:
            logger.warning("tile_cache_write_failed tile=%s err=%r", tile_key, e)

    def schedule_write(self, tile_key: str, cache_key: str, entry: CacheEntry) -> Future:
        fut = self._executor.submit(self.write, tile_key, cache_key, entry)
        with self._pending_lock:
            self._pending.add(fut)
        fut.add_done_callback(self._forget)
        return fut

    def _forget(self, fut: Future) -> None:
        with self._pending_lock:
            self._pending.discard(fut)

    def drain(self, timeout: Optional[float] = None) -> None:
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def close(self) -> None:
        self.drain()
        self._executor.shutdown(wait=True)

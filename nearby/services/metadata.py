"""
Session-derived metadata for discovery items: price tiers, capacity bucket,
time-of-day window and taxonomy categories.

One `sessions` read covers every UUID-keyed item in the batch. Items from
third-party sources (OSM ids, `venue:` ids) never join.
"""
from __future__ import annotations

import logging
import math
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from nearby.core.contracts import DiscoveryItem, FilterSupport, SessionRow
from nearby.core.settings import settings
from nearby.core.supa import gte, in_, lte
from nearby.core.time import Clock, parse_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

TAXONOMY_ID_PATTERN = re.compile(r"^tier[0-9]+-", re.IGNORECASE)
CAPACITY_RANK = {"any": 0, "couple": 1, "small": 2, "medium": 3, "large": 4}
DEFAULT_SESSION_LENGTH = timedelta(minutes=90)


def is_uuid(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


# ──────────────────────────────────────────────────────────────
# Derivations
# ──────────────────────────────────────────────────────────────

def derive_price_level(price_cents: Optional[float]) -> Optional[int]:
    if price_cents is None or not math.isfinite(price_cents):
        return None
    if price_cents <= 2000:
        return 1
    if price_cents <= 5000:
        return 2
    if price_cents <= 10000:
        return 3
    return 4


def derive_capacity_key(max_attendees: Optional[float]) -> Optional[str]:
    if max_attendees is None or not math.isfinite(max_attendees) or max_attendees <= 0:
        return None
    if max_attendees >= 10:
        return "large"
    if max_attendees >= 8:
        return "medium"
    if max_attendees >= 5:
        return "small"
    if max_attendees >= 2:
        return "couple"
    return None


def pick_capacity_key(current: Optional[str], nxt: Optional[str]) -> Optional[str]:
    if not nxt:
        return current
    if not current:
        return nxt
    return nxt if CAPACITY_RANK[nxt] >= CAPACITY_RANK[current] else current


def time_window_for_hour(hour: int) -> str:
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 22:
        return "evening"
    return "late"


@dataclass
class SessionWindow:
    window: Optional[str]
    start: Optional[datetime]
    open_now: bool = False


def derive_time_window(starts_at: Optional[str], ends_at: Optional[str], now: datetime) -> SessionWindow:
    start = parse_iso(starts_at)
    if start is None:
        return SessionWindow(window=None, start=None)
    end = parse_iso(ends_at) or (start + DEFAULT_SESSION_LENGTH)
    if start <= now <= end:
        return SessionWindow(window="open_now", start=start, open_now=True)
    # Hour in the offset the timestamp was written in (UTC when none).
    return SessionWindow(window=time_window_for_hour(start.hour), start=start)


def _taxonomy_list(values: Optional[Iterable[Optional[str]]]) -> Optional[List[str]]:
    entries = {
        v.strip()
        for v in (values or [])
        if isinstance(v, str) and v.strip() and TAXONOMY_ID_PATTERN.match(v.strip())
    }
    return sorted(entries) or None


def derive_taxonomy_categories(item: DiscoveryItem) -> Optional[List[str]]:
    return (
        _taxonomy_list(item.taxonomy_categories)
        or _taxonomy_list(item.activity_types)
        or _taxonomy_list(item.tags)
    )


def _normalize_levels(values: Iterable[Any]) -> List[int]:
    out = {
        int(round(v))
        for v in values
        if isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)
    }
    return sorted(out)


@dataclass
class _Entry:
    price_levels: set[int] = field(default_factory=set)
    capacity_key: Optional[str] = None
    next_start: Optional[datetime] = None
    time_window: Optional[str] = None
    open_now: bool = False

    def absorb(self, row: SessionRow, now: datetime) -> None:
        level = derive_price_level(row.price_cents)
        if level is not None:
            self.price_levels.add(level)
        self.capacity_key = pick_capacity_key(self.capacity_key, derive_capacity_key(row.max_attendees))

        tw = derive_time_window(row.starts_at, row.ends_at, now)
        if tw.open_now:
            self.time_window = "open_now"
            self.open_now = True
            self.next_start = tw.start or self.next_start
        elif not self.open_now and tw.window:
            if self.next_start is None or (tw.start is not None and tw.start < self.next_start):
                self.next_start = tw.start
                self.time_window = tw.window


# ──────────────────────────────────────────────────────────────
# Hydrator
# ──────────────────────────────────────────────────────────────

@dataclass
class MetadataResult:
    items: List[DiscoveryItem]
    support: FilterSupport


class MetadataHydrator:
    def __init__(self, supa: Any, *, clock: Clock = utc_now) -> None:
        self.supa = supa
        self.clock = clock

    def _load_sessions(self, ids: List[str], now: datetime) -> Dict[str, _Entry]:
        horizon = now + timedelta(days=int(settings.discovery_session_lookahead_days))
        rows = self.supa.select(
            "sessions",
            ["activity_id", "starts_at", "ends_at", "price_cents", "max_attendees"],
            filters=[
                in_("activity_id", ids),
                gte("starts_at", to_iso(now)),
                lte("starts_at", to_iso(horizon)),
            ],
            limit=settings.discovery_session_row_cap,
        )
        entries: Dict[str, _Entry] = {}
        for raw in rows or []:
            try:
                row = SessionRow.model_validate(raw)
            except ValidationError:
                continue
            if not row.activity_id:
                continue
            entries.setdefault(row.activity_id, _Entry()).absorb(row, now)
        return entries

    def hydrate(self, items: List[DiscoveryItem]) -> MetadataResult:
        """
        Attach taxonomy/price/capacity/time-window to each item.

        A failed sessions read leaves items with whatever they already carry
        and reports price/capacity/time as unsupported for this response.
        """
        now = self.clock()
        ids = list(dict.fromkeys(it.id for it in items if is_uuid(it.id)))

        sessions: Dict[str, _Entry] = {}
        failed = False
        if ids:
            try:
                sessions = self._load_sessions(ids, now)
            except Exception as e:
                failed = True
                logger.warning("session_metadata_failed ids=%s err=%r", len(ids), e)

        enriched: List[DiscoveryItem] = []
        for it in items:
            entry = sessions.get(it.id)
            levels = _normalize_levels(entry.price_levels) if entry else []
            if not levels:
                levels = _normalize_levels(it.price_levels or [])
            enriched.append(
                it.model_copy(
                    update={
                        "taxonomy_categories": derive_taxonomy_categories(it),
                        "price_levels": levels or None,
                        "capacity_key": (entry.capacity_key if entry else None) or it.capacity_key,
                        "time_window": (entry.time_window if entry else None) or it.time_window,
                    }
                )
            )

        support = FilterSupport(
            price_levels=not failed,
            capacity_key=not failed,
            time_window=not failed,
        )
        return MetadataResult(items=enriched, support=support)

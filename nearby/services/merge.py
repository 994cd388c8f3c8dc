from __future__ import annotations

import math
from typing import Dict, Iterable, List, Optional

from nearby.core.contracts import DiscoveryItem
from nearby.core.geo import round_coordinate

SEED_MARKERS = {"seed", "demo-seed", "dev-seed"}


def normalize_place_label(*candidates: Optional[str]) -> Optional[str]:
    for c in candidates:
        if isinstance(c, str) and c.strip():
            return c.strip()
    return None


def display_list(values: Optional[Iterable[Optional[str]]]) -> Optional[List[str]]:
    """Trimmed non-empty strings in source order, or None when nothing is left."""
    out = [v.strip() for v in (values or []) if isinstance(v, str) and v.strip()]
    return out or None


def has_seed_marker(tags: Optional[Iterable[Optional[str]]], venue: Optional[str]) -> bool:
    for t in tags or []:
        if isinstance(t, str) and t.strip().lower() in SEED_MARKERS:
            return True
    v = (venue or "").strip().lower()
    return bool(v) and (v == "seeded spot" or v.endswith("(seeded)"))


# ──────────────────────────────────────────────────────────────
# Place identity
# ──────────────────────────────────────────────────────────────

def _name_coordinate_key(item: DiscoveryItem) -> str:
    name = (item.name or "").strip().lower()
    lat = round_coordinate(item.lat, 4)
    lng = round_coordinate(item.lng, 4)
    return f"place:{name or 'unknown'}:{lat:.4f},{lng:.4f}"


def place_key(item: DiscoveryItem) -> str:
    """Stable place id when present, else normalized name + ~11 m coordinate."""
    if item.place_id and item.place_id.strip():
        return f"place:{item.place_id.strip()}"
    return _name_coordinate_key(item)


def merge_with_fallback(
    primary: List[DiscoveryItem],
    fallback: List[DiscoveryItem],
) -> List[DiscoveryItem]:
    """
    Primary items first (deduped by id); a fallback item is only admitted when
    its place identity is not already occupied. Primary items occupy both
    their place id key and their name+coordinate key, so a fallback row for
    the same venue without a place id still collides.
    """
    ids: set[str] = set()
    occupied: set[str] = set()
    out: List[DiscoveryItem] = []

    for it in primary:
        if it.id in ids:
            continue
        ids.add(it.id)
        out.append(it)
        occupied.add(place_key(it))
        occupied.add(_name_coordinate_key(it))

    for it in fallback:
        key = place_key(it)
        if key in occupied or it.id in ids:
            continue
        occupied.add(key)
        ids.add(it.id)
        out.append(it)

    return out


def dedupe_by_place_key(items: List[DiscoveryItem]) -> List[DiscoveryItem]:
    seen: set[str] = set()
    out: List[DiscoveryItem] = []
    for it in items:
        key = place_key(it)
        if key in seen:
            continue
        seen.add(key)
        out.append(it)
    return out


def _sort_key(item: DiscoveryItem) -> tuple[float, str, str]:
    d = item.distance_m
    if d is None or not math.isfinite(d):
        d = math.inf
    return (d, item.name, item.id)


def order_items(items: List[DiscoveryItem]) -> List[DiscoveryItem]:
    """Ascending distance, then case-sensitive name, then id."""
    return sorted(items, key=_sort_key)


def build_source_breakdown(items: Iterable[DiscoveryItem]) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for it in items:
        out[it.source] = out.get(it.source, 0) + 1
    return out

from __future__ import annotations

import math
from typing import Any, Iterable, Optional

import orjson

from nearby.core.contracts import (
    CAPACITY_KEYS,
    TIME_WINDOW_KEYS,
    DiscoveryFilters,
    DiscoveryQuery,
    NormalizedFilters,
)
from nearby.core.geo import normalize_bounds, normalize_radius, round_coordinate


def _orjson_dumps(obj: Any) -> bytes:
    return orjson.dumps(
        obj,
        option=orjson.OPT_SORT_KEYS | orjson.OPT_NON_STR_KEYS,
    )


def normalize_list(values: Optional[Iterable[Any]]) -> list[str]:
    """
    Trim, drop empties, dedupe (case-sensitive) and sort.
    Case is preserved: "Yoga" and "yoga" are distinct values.
    """
    if not values:
        return []
    out = {v.strip() for v in values if isinstance(v, str) and v.strip()}
    return sorted(out)


def normalize_price_levels(values: Optional[Iterable[Any]]) -> list[int]:
    if not values:
        return []
    out: set[int] = set()
    for v in values:
        if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
            continue
        level = int(round(v))
        if 1 <= level <= 4:
            out.add(level)
    return sorted(out)


def normalize_filters(raw: DiscoveryFilters | NormalizedFilters | dict | None) -> NormalizedFilters:
    """
    Canonicalize a filter request. Idempotent, and insensitive to the order
    of list inputs, so equal filter sets serialize identically.
    """
    if raw is None:
        data: dict[str, Any] = {}
    elif isinstance(raw, dict):
        data = raw
    else:
        data = raw.model_dump()

    capacity = data.get("capacity_key")
    window = data.get("time_window")

    return NormalizedFilters(
        activity_types=normalize_list(data.get("activity_types")),
        tags=normalize_list(data.get("tags")),
        traits=normalize_list(data.get("traits")),
        taxonomy_categories=normalize_list(data.get("taxonomy_categories")),
        price_levels=normalize_price_levels(data.get("price_levels")),
        capacity_key=capacity if capacity in CAPACITY_KEYS else "any",
        time_window=window if window in TIME_WINDOW_KEYS else "any",
    )


def serialize_filters(filters: NormalizedFilters) -> str:
    return _orjson_dumps(filters.model_dump()).decode("utf-8")


def has_active_filters(filters: NormalizedFilters) -> bool:
    return bool(
        filters.activity_types
        or filters.tags
        or filters.traits
        or filters.taxonomy_categories
        or filters.price_levels
        or filters.capacity_key != "any"
        or filters.time_window != "any"
    )


def build_cache_key(kind: str, query: DiscoveryQuery) -> str:
    """
    "{kind}|{lat6}|{lng6}|{radius}|{limit}|{bounds}|{filters}"

    Pure function of the normalized query: filter ordering never changes the
    key, any other difference does.
    """
    lat = round_coordinate(query.center.lat, 6)
    lng = round_coordinate(query.center.lng, 6)
    radius = normalize_radius(query.radius_m)

    if query.bounds is not None:
        b = normalize_bounds(query.bounds)
        bounds = f"{b.sw.lat:.6f},{b.sw.lng:.6f},{b.ne.lat:.6f},{b.ne.lng:.6f}"
    else:
        bounds = "-"

    filters = serialize_filters(normalize_filters(query.filters))
    return f"{kind}|{lat:.6f}|{lng:.6f}|{radius}|{int(query.limit)}|{bounds}|{filters}"

from __future__ import annotations

import math
from collections import Counter
from typing import Iterable, List, Optional

from nearby.core.contracts import DiscoveryFacets, DiscoveryItem, FacetValue


def _facet(values: Iterable[Optional[str]]) -> List[FacetValue]:
    counts: Counter[str] = Counter()
    for v in values:
        if not isinstance(v, str):
            continue
        v = v.strip()
        if v:
            counts[v] += 1
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [FacetValue(value=v, count=c) for v, c in ranked]


def build_facets(items: List[DiscoveryItem]) -> DiscoveryFacets:
    """
    value → count histograms over the final item list, count desc then
    value asc. Always built fresh from the items being returned.
    """
    activity_types: list[str] = []
    tags: list[str] = []
    traits: list[str] = []
    categories: list[str] = []
    prices: list[str] = []
    capacity: list[str] = []
    windows: list[str] = []

    for it in items:
        activity_types.extend(it.activity_types or [])
        tags.extend(it.tags or [])
        traits.extend(it.traits or [])
        categories.extend(it.taxonomy_categories or [])
        for p in it.price_levels or []:
            if isinstance(p, (int, float)) and math.isfinite(p):
                prices.append(str(int(round(p))))
        if it.capacity_key:
            capacity.append(it.capacity_key)
        if it.time_window:
            windows.append(it.time_window)

    return DiscoveryFacets(
        activity_types=_facet(activity_types),
        tags=_facet(tags),
        traits=_facet(traits),
        taxonomy_categories=_facet(categories),
        price_levels=_facet(prices),
        capacity_key=_facet(capacity),
        time_window=_facet(windows),
    )

from __future__ import annotations

from typing import List

from nearby.core.contracts import DiscoveryItem, FilterSupport, NormalizedFilters
from nearby.core.keying import normalize_list, normalize_price_levels

FULL_SUPPORT = FilterSupport()

# Schedule-derived fields are only populated by metadata hydration; items
# are not judged on them before that step.
PRE_HYDRATION_SUPPORT = FilterSupport(
    taxonomy_categories=False,
    price_levels=False,
    capacity_key=False,
    time_window=False,
)


def combine_support(current: FilterSupport, nxt: FilterSupport) -> FilterSupport:
    """Per-dimension AND."""
    return FilterSupport(
        **{name: bool(getattr(current, name) and getattr(nxt, name)) for name in FilterSupport.model_fields}
    )


def filter_items(
    items: List[DiscoveryItem],
    filters: NormalizedFilters,
    support: FilterSupport,
) -> List[DiscoveryItem]:
    """
    Apply the filters a source can be trusted with. A dimension the support
    map marks false is skipped rather than used to exclude items.
    """
    want_types = filters.activity_types if support.activity_types else []
    want_tags = filters.tags if support.tags else []
    want_traits = filters.traits if support.traits else []
    want_cats = filters.taxonomy_categories if support.taxonomy_categories else []
    want_prices = filters.price_levels if support.price_levels else []
    want_capacity = filters.capacity_key if support.capacity_key and filters.capacity_key != "any" else None
    want_window = filters.time_window if support.time_window and filters.time_window != "any" else None

    if not (want_types or want_tags or want_traits or want_cats or want_prices or want_capacity or want_window):
        return list(items)

    def _any(wanted: list, have: list) -> bool:
        return any(v in have for v in wanted)

    out: List[DiscoveryItem] = []
    for it in items:
        if want_types and not _any(want_types, normalize_list(it.activity_types)):
            continue
        if want_tags and not _any(want_tags, normalize_list(it.tags)):
            continue
        if want_traits and not _any(want_traits, normalize_list(it.traits)):
            continue
        if want_cats and not _any(want_cats, normalize_list(it.taxonomy_categories)):
            continue
        if want_prices and not _any(want_prices, normalize_price_levels(it.price_levels)):
            continue
        if want_capacity and it.capacity_key != want_capacity:
            continue
        if want_window and it.time_window != want_window:
            continue
        out.append(it)
    return out

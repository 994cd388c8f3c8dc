"""
Nearby discovery orchestrator.

discover_nearby_activities:
  normalize → tile cache lookup
    hit  → re-filter cached items, order, slice
    miss → spatial RPC
           → activities table   (while short of limit)
           → OSM Overpass       (while short of limit)
           → venues table       (while short of limit)
           → session metadata → re-filter → order + slice
           → place labels → facets → schedule cache write

discover_nearby_venues:
  normalize → tile cache lookup (venues required) → venue ranking → items
"""
from __future__ import annotations

import logging
import math
from typing import Any, List, Optional, Sequence

from nearby.core.contracts import (
    CacheEntry,
    CacheInfo,
    DiscoveryFilters,
    DiscoveryItem,
    DiscoveryQuery,
    DiscoveryResult,
    FilterSupport,
    NormalizedFilters,
    VenueDiscovery,
)
from nearby.core.errors import InvalidQueryError
from nearby.core.geo import (
    clamp_point,
    compute_tile_key,
    haversine_m,
    normalize_bounds,
    normalize_radius,
    resolve_bounds,
)
from nearby.core.keying import build_cache_key, has_active_filters, normalize_filters
from nearby.core.settings import settings
from nearby.core.supa import in_
from nearby.services.facets import build_facets
from nearby.services.filtering import FULL_SUPPORT, PRE_HYDRATION_SUPPORT, combine_support, filter_items
from nearby.services.merge import (
    build_source_breakdown,
    dedupe_by_place_key,
    merge_with_fallback,
    normalize_place_label,
    order_items,
)
from nearby.services.metadata import MetadataHydrator
from nearby.services.tile_cache import TileCache
from nearby.services.venues import VenueSearch

logger = logging.getLogger(__name__)


class Discovery:
    def __init__(
        self,
        *,
        supa: Any,
        cache: TileCache,
        spatial: Any,
        activities: Any,
        overpass: Optional[Any],
        venue_table: Optional[Any],
        hydrator: MetadataHydrator,
        venue_search: VenueSearch,
        max_items: Optional[int] = None,
    ) -> None:
        self.supa = supa
        self.cache = cache
        self.spatial = spatial
        self.fallbacks: Sequence[Any] = tuple(s for s in (activities, overpass, venue_table) if s is not None)
        self.hydrator = hydrator
        self.venue_search = venue_search
        self.max_items = int(max_items or settings.discovery_max_cache_items)

    # ──────────────────────────────────────────────────────────
    # Normalization
    # ──────────────────────────────────────────────────────────

    def normalize_query(self, query: DiscoveryQuery) -> DiscoveryQuery:
        lat, lng = query.center.lat, query.center.lng
        if not (math.isfinite(lat) and math.isfinite(lng)):
            raise InvalidQueryError("center must be a finite lat/lng")

        limit = query.limit if isinstance(query.limit, int) else int(settings.discovery_default_limit)
        return query.model_copy(
            update={
                "center": clamp_point(query.center),
                "radius_m": float(normalize_radius(query.radius_m)),
                "bounds": normalize_bounds(query.bounds) if query.bounds is not None else None,
                "limit": max(1, min(limit, self.max_items)),
            }
        )

    # ──────────────────────────────────────────────────────────
    # Result assembly
    # ──────────────────────────────────────────────────────────

    def _result(
        self,
        query: DiscoveryQuery,
        items: List[DiscoveryItem],
        *,
        support: FilterSupport,
        cache_key: str,
        hit: bool,
        source: Optional[str],
        degraded: bool = False,
        fallback_error: Optional[str] = None,
        fallback_source: Optional[str] = None,
    ) -> DiscoveryResult:
        return DiscoveryResult(
            center=query.center,
            radius_m=normalize_radius(query.radius_m),
            count=len(items),
            items=items,
            filter_support=support,
            facets=build_facets(items),
            source_breakdown=build_source_breakdown(items),
            cache=CacheInfo(key=cache_key, hit=hit),
            source=source,
            degraded=degraded,
            fallback_error=fallback_error,
            fallback_source=fallback_source,
        )

    def _from_cache(
        self,
        entry: CacheEntry,
        query: DiscoveryQuery,
        filters: NormalizedFilters,
        cache_key: str,
    ) -> DiscoveryResult:
        kept = filter_items(entry.items, filters, entry.filter_support)
        limited = order_items(kept)[: query.limit]
        return self._result(
            query,
            limited,
            support=entry.filter_support,
            cache_key=cache_key,
            hit=True,
            source=entry.source,
        )

    def _hydrate_place_labels(self, items: List[DiscoveryItem]) -> List[DiscoveryItem]:
        place_ids = list(dict.fromkeys(it.place_id for it in items if it.place_id))
        names: dict[str, Optional[str]] = {}
        if place_ids:
            try:
                rows = self.supa.select("places", ["id", "name"], filters=[in_("id", place_ids)])
            except Exception as e:
                logger.warning("place_label_hydration_failed ids=%s err=%r", len(place_ids), e)
                return items
            names = {r["id"]: r.get("name") for r in rows or [] if r.get("id")}

        return [
            it.model_copy(
                update={
                    "place_label": normalize_place_label(
                        names.get(it.place_id) if it.place_id else None,
                        it.place_label,
                        it.venue,
                    )
                }
            )
            for it in items
        ]

    # ──────────────────────────────────────────────────────────
    # Activities
    # ──────────────────────────────────────────────────────────

    def discover_nearby_activities(self, query: DiscoveryQuery, *, bypass_cache: bool = False) -> DiscoveryResult:
        q = self.normalize_query(query)
        filters = normalize_filters(q.filters)
        cache_key = build_cache_key("activities", q)
        tile_key = compute_tile_key(q.center)

        if not bypass_cache:
            entry = self.cache.read(tile_key, cache_key)
            if entry is not None:
                logger.info("discovery_cache_hit tile=%s", tile_key)
                return self._from_cache(entry, q, filters, cache_key)

        support = FULL_SUPPORT
        primary = self.spatial.fetch(q, filters)
        support = combine_support(support, primary.support)
        items = filter_items(primary.items, filters, combine_support(primary.support, PRE_HYDRATION_SUPPORT))

        degraded = False
        fallback_error: Optional[str] = None
        fallback_source: Optional[str] = None

        for adapter in self.fallbacks:
            if len(items) >= q.limit:
                break
            try:
                res = adapter.fetch(q, filters)
            except Exception as e:
                logger.warning("discovery_fallback_failed source=%s err=%r", getattr(adapter, "source", "?"), e)
                if not degraded:
                    degraded = True
                    fallback_error = str(e) or e.__class__.__name__
                continue

            kept = filter_items(res.items, filters, combine_support(res.support, PRE_HYDRATION_SUPPORT))
            merged = merge_with_fallback(items, kept)
            if len(merged) > len(items):
                support = combine_support(support, res.support)
                fallback_source = fallback_source or res.source_name
            items = merged

        meta = self.hydrator.hydrate(items)
        support = combine_support(support, meta.support)
        items = filter_items(meta.items, filters, support)

        ordered = order_items(items)[: q.limit]
        labelled = self._hydrate_place_labels(ordered)
        final = merge_with_fallback(labelled, [])[: q.limit]

        result = self._result(
            q,
            final,
            support=support,
            cache_key=cache_key,
            hit=False,
            source=primary.source_name or fallback_source or "client-filter",
            degraded=degraded,
            fallback_error=fallback_error,
            fallback_source=fallback_source,
        )
        logger.info(
            "discovery_activities tile=%s count=%s source=%s degraded=%s filtered=%s",
            tile_key, result.count, result.source, degraded, has_active_filters(filters),
        )
        self.cache.schedule_write(tile_key, cache_key, self.cache.build_entry(result))
        return result

    # ──────────────────────────────────────────────────────────
    # Venues
    # ──────────────────────────────────────────────────────────

    def discover_nearby_venues(
        self,
        query: DiscoveryQuery,
        activity: str,
        *,
        include_unverified: bool = True,
    ) -> VenueDiscovery:
        activity = (activity or "").strip()
        if not activity:
            raise InvalidQueryError("activity is required")

        q = self.normalize_query(query)
        keyed = q.model_copy(update={"filters": DiscoveryFilters(activity_types=[activity])})
        cache_key = build_cache_key("venues", keyed)
        if not include_unverified:
            cache_key = f"{cache_key}|verified"
        tile_key = compute_tile_key(q.center)

        entry = self.cache.read(tile_key, cache_key)
        if entry is not None and entry.venues is not None:
            result = self._from_cache(entry, q, normalize_filters(q.filters), cache_key)
            return VenueDiscovery(result=result, venues=entry.venues, debug=None)

        found = self.venue_search.search(
            activity,
            bounds=resolve_bounds(q),
            limit=q.limit,
            include_unverified=include_unverified,
        )

        items: List[DiscoveryItem] = []
        for v in found.venues:
            if v.lat is None or v.lng is None:
                continue
            items.append(
                DiscoveryItem(
                    id=v.venue_id,
                    name=v.venue_name,
                    venue=v.display_address,
                    place_id=None,
                    place_label=normalize_place_label(v.venue_name, v.display_address),
                    lat=v.lat,
                    lng=v.lng,
                    distance_m=haversine_m(q.center.lat, q.center.lng, v.lat, v.lng),
                    activity_types=[activity],
                    tags=v.primary_categories or None,
                    traits=None,
                    source="venues",
                )
            )

        ordered = order_items(dedupe_by_place_key(items))[: q.limit]
        result = self._result(
            q,
            ordered,
            support=found.support,
            cache_key=cache_key,
            hit=False,
            source="venues",
        )
        self.cache.schedule_write(tile_key, cache_key, self.cache.build_entry(result, found.venues))
        return VenueDiscovery(result=result, venues=found.venues, debug=found.debug)

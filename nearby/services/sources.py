"""
Supabase-backed discovery sources.

  SpatialIndexSource     activities_nearby RPC (PostGIS)       source="postgis"
  ActivitiesTableSource  bbox scan over `activities`           source="activities"
  VenueTableSource       bbox scan over `venues`               source="supabase-venues"

Each returns a SourceResult; rows are parsed into their tagged row model and
converted to DiscoveryItem here, never passed further raw.

The table sources negotiate optional columns with the live schema: a
"column does not exist" (or missing relationship) error drops that field and
retries within a small budget. What was found missing is remembered on the
source's SchemaCapabilities for the life of the process, so later calls skip
the failed round-trip.
"""
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional, Sequence

from pydantic import ValidationError

from nearby.core.contracts import (
    ActivityRow,
    DiscoveryItem,
    DiscoveryQuery,
    FilterSupport,
    NormalizedFilters,
    SpatialRow,
    VenueRow,
)
from nearby.core.errors import SourceUnavailableError, SupaError
from nearby.core.geo import (
    haversine_m,
    normalize_radius,
    point_in_bounds,
    resolve_bounds,
    sanitize_coordinate,
)
from nearby.core.settings import settings
from nearby.core.supa import Filter, gte, in_, is_missing_column, is_missing_relationship, lte
from nearby.core.time import Clock, to_iso, utc_now
from nearby.services.filtering import FULL_SUPPORT
from nearby.services.merge import display_list, has_seed_marker, normalize_place_label

logger = logging.getLogger(__name__)


@dataclass
class SourceResult:
    items: List[DiscoveryItem]
    support: FilterSupport
    source_name: Optional[str]
    error: Optional[str] = None
    dropped: frozenset[str] = field(default_factory=frozenset)


# ──────────────────────────────────────────────────────────────
# Schema capability negotiation
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class OptionalField:
    name: str
    select: str
    relation: Optional[str] = None

    def missing_in(self, err: BaseException) -> bool:
        if self.relation:
            return is_missing_relationship(err, self.relation)
        return is_missing_column(err, self.name)


class SchemaCapabilities:
    """
    Which optional columns/relationships a table has been found to lack.
    Process-wide for the owning source; reset() for tests or a schema deploy.
    """

    def __init__(self) -> None:
        self._missing: set[str] = set()
        self._lock = threading.Lock()

    def available(self, name: str) -> bool:
        with self._lock:
            return name not in self._missing

    def mark_missing(self, name: str) -> None:
        with self._lock:
            self._missing.add(name)

    def missing(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._missing)

    def reset(self) -> None:
        with self._lock:
            self._missing.clear()


class NegotiatingSource:
    table: str = ""
    base_columns: Sequence[str] = ()
    optional_fields: Sequence[OptionalField] = ()

    def __init__(self, supa: Any, *, caps: Optional[SchemaCapabilities] = None, max_attempts: int = 5) -> None:
        self.supa = supa
        self.caps = caps or SchemaCapabilities()
        self.max_attempts = max(1, int(max_attempts))

    def _select_negotiated(
        self,
        *,
        wanted: Iterable[str],
        filters: Sequence[Filter],
        limit: int,
        order_for: Optional[Callable[[set[str]], Optional[str]]] = None,
    ) -> tuple[list[dict[str, Any]], set[str]]:
        wanted_set = set(wanted)
        fields = [f for f in self.optional_fields if f.name in wanted_set]

        last_err: Optional[BaseException] = None
        for _ in range(self.max_attempts):
            included = [f for f in fields if self.caps.available(f.name)]
            names = {f.name for f in included}
            columns = list(self.base_columns) + [f.select for f in included]
            order = order_for(names) if order_for else None
            try:
                rows = self.supa.select(self.table, columns, filters=filters, order=order, limit=limit)
                return rows, names
            except SupaError as err:
                last_err = err
                culprit = next((f for f in included if f.missing_in(err)), None)
                if culprit is None:
                    raise
                logger.warning(
                    "schema_field_missing table=%s field=%s code=%s",
                    self.table, culprit.name, err.code,
                )
                self.caps.mark_missing(culprit.name)

        assert last_err is not None
        raise last_err


def _finite(v: Optional[float]) -> bool:
    return v is not None and math.isfinite(v)


# ──────────────────────────────────────────────────────────────
# 1) Spatial index (RPC)
# ──────────────────────────────────────────────────────────────

class SpatialIndexSource:
    source = "postgis"
    rpc_name = "activities_nearby"

    def __init__(self, supa: Any) -> None:
        self.supa = supa

    def fetch(self, query: DiscoveryQuery, filters: NormalizedFilters) -> SourceResult:
        payload: dict[str, Any] = {
            "lat": query.center.lat,
            "lng": query.center.lng,
            "radius_m": normalize_radius(query.radius_m),
            "limit_rows": int(query.limit),
        }
        if filters.activity_types:
            payload["types"] = filters.activity_types
        if filters.tags:
            payload["tags"] = filters.tags

        try:
            data = self.supa.rpc(self.rpc_name, payload)
        except Exception as e:
            # Degrade to "no data, fully trusted" so later sources decide support.
            logger.warning("spatial_rpc_failed rpc=%s err=%r", self.rpc_name, e)
            return SourceResult(items=[], support=FULL_SUPPORT, source_name=None, error=str(e))

        items: List[DiscoveryItem] = []
        for raw in data or []:
            try:
                row = SpatialRow.model_validate(raw)
            except ValidationError:
                continue
            item = self._to_item(row, query)
            if item is not None:
                items.append(item)

        return SourceResult(
            items=items,
            support=FULL_SUPPORT,
            source_name=self.source if items else None,
        )

    def _to_item(self, row: SpatialRow, query: DiscoveryQuery) -> Optional[DiscoveryItem]:
        if has_seed_marker(row.tags, row.venue):
            return None
        lat = row.lat_out if row.lat_out is not None else row.lat
        lng = row.lng_out if row.lng_out is not None else row.lng
        if not _finite(lat) or not _finite(lng):
            return None
        distance = row.distance_m
        if not _finite(distance):
            distance = haversine_m(query.center.lat, query.center.lng, lat, lng)
        return DiscoveryItem(
            id=row.id,
            name=row.name or "",
            venue=row.venue,
            place_id=row.place_id,
            place_label=normalize_place_label(row.place_label, row.venue, row.name),
            lat=lat,
            lng=lng,
            distance_m=distance,
            activity_types=display_list(row.activity_types),
            tags=display_list(row.tags),
            traits=display_list(row.traits),
            source=self.source,
        )


# ──────────────────────────────────────────────────────────────
# 2) Relational fallback (activities table)
# ──────────────────────────────────────────────────────────────

PREFERENCES_RELATION = "activity_participant_preferences"


class ActivitiesTableSource(NegotiatingSource):
    source = "activities"
    table = "activities"
    base_columns = ("id", "name", "venue", "lat", "lng")
    optional_fields = (
        OptionalField("activity_types", "activity_types"),
        OptionalField("tags", "tags"),
        OptionalField("traits", "traits"),
        OptionalField("place_id", "place_id"),
        OptionalField("place_label", "place_label"),
        OptionalField(
            "participant_preferences",
            f"participant_preferences:{PREFERENCES_RELATION}(preferred_traits)",
            relation=PREFERENCES_RELATION,
        ),
    )

    def __init__(
        self,
        supa: Any,
        *,
        caps: Optional[SchemaCapabilities] = None,
        max_attempts: Optional[int] = None,
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(
            supa,
            caps=caps,
            max_attempts=max_attempts or settings.discovery_max_schema_retries,
        )
        self.clock = clock

    def fetch(self, query: DiscoveryQuery, filters: NormalizedFilters) -> SourceResult:
        bounds = resolve_bounds(query)
        row_limit = max(200, int(query.limit) * 4)

        wanted = ["activity_types", "tags", "traits", "place_id", "place_label"]
        if filters.traits:
            wanted.append("participant_preferences")

        try:
            rows, included = self._select_negotiated(
                wanted=wanted,
                filters=[
                    gte("lat", bounds.sw.lat),
                    lte("lat", bounds.ne.lat),
                    gte("lng", bounds.sw.lng),
                    lte("lng", bounds.ne.lng),
                ],
                limit=row_limit,
            )
        except SupaError as err:
            hay = err.haystack()
            if "ambiguous" in hay or "column reference" in hay:
                raise SourceUnavailableError(
                    "Nearby locations are temporarily unavailable. Please try again soon."
                ) from err
            raise

        radius = normalize_radius(query.radius_m)
        candidates: list[tuple[float, ActivityRow]] = []
        for raw in rows:
            try:
                row = ActivityRow.model_validate(raw)
            except ValidationError:
                continue
            if has_seed_marker(row.tags, row.venue):
                continue
            if not _finite(row.lat) or not _finite(row.lng):
                continue
            d = haversine_m(query.center.lat, query.center.lng, row.lat, row.lng)
            # explicit bounds are the search area; otherwise cut by radius
            if query.bounds is not None:
                if not point_in_bounds(row.lat, row.lng, bounds):
                    continue
            elif d > radius:
                continue
            candidates.append((d, row))

        candidates.sort(key=lambda pair: pair[0])
        chosen = candidates[: int(query.limit)]
        upcoming = self._upcoming_counts([row.id for _, row in chosen])

        items = [self._to_item(row, d, included, upcoming.get(row.id, 0)) for d, row in chosen]

        has_prefs = "participant_preferences" in included
        support = FilterSupport(
            activity_types="activity_types" in included,
            tags="tags" in included,
            traits=("traits" in included) or has_prefs,
            taxonomy_categories="activity_types" in included,
            price_levels=True,
            capacity_key=True,
            time_window=True,
        )
        dropped = frozenset(n for n in wanted if n not in included)
        if dropped:
            logger.info("activities_fallback degraded dropped=%s", sorted(dropped))

        return SourceResult(
            items=items,
            support=support,
            source_name=self.source if items else None,
            dropped=dropped,
        )

    def _to_item(self, row: ActivityRow, distance: float, included: set[str], upcoming: int) -> DiscoveryItem:
        traits: list[str] = []
        if "traits" in included:
            traits.extend(display_list(row.traits) or [])
        if "participant_preferences" in included:
            for pref in row.participant_preferences or []:
                traits.extend(display_list(pref.preferred_traits) or [])
        unique_traits = list(dict.fromkeys(traits))

        return DiscoveryItem(
            id=row.id,
            name=row.name or "",
            venue=row.venue,
            place_id=row.place_id if "place_id" in included else None,
            place_label=normalize_place_label(
                row.place_label if "place_label" in included else None,
                row.venue,
                row.name,
            ),
            lat=row.lat,
            lng=row.lng,
            distance_m=distance,
            activity_types=display_list(row.activity_types) if "activity_types" in included else None,
            tags=display_list(row.tags) if "tags" in included else None,
            traits=unique_traits or None,
            upcoming_session_count=upcoming,
            source=self.source,
        )

    def _upcoming_counts(self, activity_ids: list[str]) -> dict[str, int]:
        counts: dict[str, int] = {}
        if not activity_ids:
            return counts
        try:
            rows = self.supa.select(
                "sessions",
                ["activity_id"],
                filters=[in_("activity_id", activity_ids), gte("starts_at", to_iso(self.clock()))],
                limit=settings.discovery_session_row_cap,
            )
        except Exception as e:
            logger.warning("upcoming_session_counts_failed err=%r", e)
            return counts
        for r in rows or []:
            aid = r.get("activity_id")
            if aid:
                counts[aid] = counts.get(aid, 0) + 1
        return counts


# ──────────────────────────────────────────────────────────────
# 4) Secondary venue table
# ──────────────────────────────────────────────────────────────

class VenueTableSource(NegotiatingSource):
    source = "supabase-venues"
    table = "venues"
    base_columns = ("id", "name", "address", "lat", "lng")
    optional_fields = (
        OptionalField("ai_activity_tags", "ai_activity_tags"),
        OptionalField("verified_activities", "verified_activities"),
        OptionalField("updated_at", "updated_at"),
    )

    def __init__(
        self,
        supa: Any,
        *,
        caps: Optional[SchemaCapabilities] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        super().__init__(
            supa,
            caps=caps,
            max_attempts=max_attempts or settings.discovery_venue_schema_retries,
        )

    def fetch(self, query: DiscoveryQuery, filters: NormalizedFilters) -> SourceResult:
        bounds = resolve_bounds(query)
        limit = int(query.limit)

        rows, included = self._select_negotiated(
            wanted=[f.name for f in self.optional_fields],
            filters=[
                gte("lat", bounds.sw.lat),
                lte("lat", bounds.ne.lat),
                gte("lng", bounds.sw.lng),
                lte("lng", bounds.ne.lng),
            ],
            limit=max(limit * 2, 40),
            order_for=lambda names: "updated_at.desc" if "updated_at" in names else None,
        )

        items: List[DiscoveryItem] = []
        for raw in rows:
            try:
                row = VenueRow.model_validate(raw)
            except ValidationError:
                continue
            item = self._to_item(row, query)
            if item is not None:
                items.append(item)
        items.sort(key=lambda it: it.distance_m or 0.0)

        support = FilterSupport(
            activity_types="verified_activities" in included,
            tags="ai_activity_tags" in included,
            traits=False,
            taxonomy_categories=False,
            price_levels=False,
            capacity_key=False,
            time_window=False,
        )
        return SourceResult(
            items=items,
            support=support,
            source_name=self.source if items else None,
            dropped=frozenset(f.name for f in self.optional_fields if f.name not in included),
        )

    def _to_item(self, row: VenueRow, query: DiscoveryQuery) -> Optional[DiscoveryItem]:
        if not row.id:
            return None
        lat = sanitize_coordinate(row.lat)
        lng = sanitize_coordinate(row.lng)
        if lat is None or lng is None:
            return None
        name = row.name.strip() if isinstance(row.name, str) and row.name.strip() else "Nearby venue"
        return DiscoveryItem(
            id=f"venue:{row.id}",
            name=name,
            venue=row.address,
            place_id=None,
            place_label=normalize_place_label(row.name, row.address),
            lat=lat,
            lng=lng,
            distance_m=haversine_m(query.center.lat, query.center.lng, lat, lng),
            activity_types=display_list(row.verified_activities),
            tags=display_list(row.ai_activity_tags),
            traits=None,
            source=self.source,
        )

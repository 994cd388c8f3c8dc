from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────────────────────
# Shared
# ──────────────────────────────────────────────────────────────

class LatLng(BaseModel):
    lat: float
    lng: float


class Bounds(BaseModel):
    sw: LatLng
    ne: LatLng


CapacityKey = Literal["any", "couple", "small", "medium", "large"]
TimeWindowKey = Literal["any", "morning", "afternoon", "evening", "late", "open_now"]

CAPACITY_KEYS: tuple[str, ...] = ("any", "couple", "small", "medium", "large")
TIME_WINDOW_KEYS: tuple[str, ...] = ("any", "morning", "afternoon", "evening", "late", "open_now")


# ──────────────────────────────────────────────────────────────
# Filters
# ──────────────────────────────────────────────────────────────

class DiscoveryFilters(BaseModel):
    """Raw caller filters; anything goes until normalize_filters()."""
    activity_types: Optional[List[Optional[str]]] = None
    tags: Optional[List[Optional[str]]] = None
    traits: Optional[List[Optional[str]]] = None
    taxonomy_categories: Optional[List[Optional[str]]] = None
    price_levels: Optional[List[Optional[float]]] = None
    capacity_key: Optional[str] = None
    time_window: Optional[str] = None


class NormalizedFilters(BaseModel):
    activity_types: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    traits: List[str] = Field(default_factory=list)
    taxonomy_categories: List[str] = Field(default_factory=list)
    price_levels: List[int] = Field(default_factory=list)
    capacity_key: CapacityKey = "any"
    time_window: TimeWindowKey = "any"


# ──────────────────────────────────────────────────────────────
# Query + items
# ──────────────────────────────────────────────────────────────

class DiscoveryQuery(BaseModel):
    center: LatLng
    radius_m: Optional[float] = None
    limit: int = 50
    bounds: Optional[Bounds] = None
    filters: DiscoveryFilters = Field(default_factory=DiscoveryFilters)


class DiscoveryItem(BaseModel):
    id: str
    name: str
    venue: Optional[str] = None          # venue label / address line
    place_id: Optional[str] = None
    place_label: Optional[str] = None
    lat: float
    lng: float
    distance_m: Optional[float] = None
    activity_types: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    traits: Optional[List[str]] = None
    taxonomy_categories: Optional[List[str]] = None
    price_levels: Optional[List[int]] = None
    capacity_key: Optional[CapacityKey] = None
    time_window: Optional[TimeWindowKey] = None
    upcoming_session_count: Optional[int] = None
    source: str                          # "postgis" | "activities" | "osm-overpass" | "supabase-venues" | "venues"


class FilterSupport(BaseModel):
    """Whether the current result set can be trusted to honour each filter."""
    activity_types: bool = True
    tags: bool = True
    traits: bool = True
    taxonomy_categories: bool = True
    price_levels: bool = True
    capacity_key: bool = True
    time_window: bool = True


class FacetValue(BaseModel):
    value: str
    count: int


class DiscoveryFacets(BaseModel):
    activity_types: List[FacetValue] = Field(default_factory=list)
    tags: List[FacetValue] = Field(default_factory=list)
    traits: List[FacetValue] = Field(default_factory=list)
    taxonomy_categories: List[FacetValue] = Field(default_factory=list)
    price_levels: List[FacetValue] = Field(default_factory=list)
    capacity_key: List[FacetValue] = Field(default_factory=list)
    time_window: List[FacetValue] = Field(default_factory=list)


class CacheInfo(BaseModel):
    key: str
    hit: bool


class DiscoveryResult(BaseModel):
    center: LatLng
    radius_m: int
    count: int
    items: List[DiscoveryItem] = Field(default_factory=list)
    filter_support: FilterSupport = Field(default_factory=FilterSupport)
    facets: DiscoveryFacets = Field(default_factory=DiscoveryFacets)
    source_breakdown: Dict[str, int] = Field(default_factory=dict)
    cache: CacheInfo
    source: Optional[str] = None
    degraded: bool = False
    fallback_error: Optional[str] = None
    fallback_source: Optional[str] = None


# ──────────────────────────────────────────────────────────────
# Venues (activity → venue ranking)
# ──────────────────────────────────────────────────────────────

class RankedVenue(BaseModel):
    venue_id: str
    venue_name: str
    lat: Optional[float] = None
    lng: Optional[float] = None
    display_address: Optional[str] = None
    primary_categories: List[str] = Field(default_factory=list)
    rating: Optional[float] = None
    price_level: Optional[int] = None
    activity: str
    ai_confidence: float = 0.0
    user_yes_votes: int = 0
    user_no_votes: int = 0
    category_match: bool = False
    keyword_match: bool = False
    score: float = 0.0
    verified: bool = False
    needs_verification: bool = False


class VenueSearchDebug(BaseModel):
    limit_applied: int
    venue_count: int
    vote_count: int


class VenueDiscovery(BaseModel):
    result: DiscoveryResult
    venues: List[RankedVenue] = Field(default_factory=list)
    debug: Optional[VenueSearchDebug] = None


# ──────────────────────────────────────────────────────────────
# Tile cache
# ──────────────────────────────────────────────────────────────

class CacheEntry(BaseModel):
    cached_at: str                       # ISO8601 UTC
    expires_at: str                      # ISO8601 UTC
    items: List[DiscoveryItem] = Field(default_factory=list)
    filter_support: FilterSupport = Field(default_factory=FilterSupport)
    source_breakdown: Dict[str, int] = Field(default_factory=dict)
    source: Optional[str] = None
    venues: Optional[List[RankedVenue]] = None


# ──────────────────────────────────────────────────────────────
# Source rows: tagged per backing source, converted to
# DiscoveryItem at the adapter boundary and never passed further.
# ──────────────────────────────────────────────────────────────

class _SourceRow(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SpatialRow(_SourceRow):
    kind: Literal["spatial"] = "spatial"
    id: str
    name: Optional[str] = None
    venue: Optional[str] = None
    place_id: Optional[str] = None
    place_label: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    lat_out: Optional[float] = None
    lng_out: Optional[float] = None
    distance_m: Optional[float] = None
    activity_types: Optional[List[Optional[str]]] = None
    tags: Optional[List[Optional[str]]] = None
    traits: Optional[List[Optional[str]]] = None


class PreferenceRow(_SourceRow):
    preferred_traits: Optional[List[Optional[str]]] = None


class ActivityRow(_SourceRow):
    kind: Literal["relational"] = "relational"
    id: str
    name: Optional[str] = None
    venue: Optional[str] = None
    place_id: Optional[str] = None
    place_label: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    activity_types: Optional[List[Optional[str]]] = None
    tags: Optional[List[Optional[str]]] = None
    traits: Optional[List[Optional[str]]] = None
    participant_preferences: Optional[List[PreferenceRow]] = None


class OverpassElement(_SourceRow):
    kind: Literal["third_party"] = "third_party"
    type: str = "node"
    id: int
    lat: Optional[float] = None
    lon: Optional[float] = None
    center: Optional[Dict[str, Optional[float]]] = None
    tags: Dict[str, str] = Field(default_factory=dict)


class VenueRow(_SourceRow):
    kind: Literal["venue_table"] = "venue_table"
    id: Optional[str] = None
    name: Optional[str] = None
    address: Optional[str] = None
    lat: Optional[Union[float, str]] = None
    lng: Optional[Union[float, str]] = None
    ai_activity_tags: Optional[List[Optional[str]]] = None
    verified_activities: Optional[List[Optional[str]]] = None
    updated_at: Optional[str] = None


class SessionRow(_SourceRow):
    activity_id: Optional[str] = None
    starts_at: Optional[str] = None
    ends_at: Optional[str] = None
    price_cents: Optional[float] = None
    max_attendees: Optional[float] = None


class VenueCandidateRow(_SourceRow):
    id: str
    name: Optional[str] = None
    address: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    ai_activity_tags: Optional[List[Optional[str]]] = None
    ai_confidence_scores: Optional[Dict[str, Any]] = None
    verified_activities: Optional[List[Optional[str]]] = None
    needs_verification: Optional[bool] = None
    metadata: Optional[Dict[str, Any]] = None
    rating: Optional[float] = None
    price_level: Optional[int] = None

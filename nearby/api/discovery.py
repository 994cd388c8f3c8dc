from __future__ import annotations

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, Query

from nearby.core.contracts import (
    Bounds,
    DiscoveryFilters,
    DiscoveryQuery,
    DiscoveryResult,
    LatLng,
    VenueDiscovery,
)
from nearby.core.errors import InvalidQueryError, SupaError, bad_request, service_unavailable
from nearby.core.settings import settings
from nearby.services.discovery import Discovery

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/discovery")


def get_discovery_service() -> Discovery:
    raise RuntimeError("Discovery must be provided by app dependency override")


# ──────────────────────────────────────────────────────────────
# Query parsing
# ──────────────────────────────────────────────────────────────

def _csv(value: Optional[str]) -> Optional[list[str]]:
    if not value:
        return None
    parts = [p.strip() for p in value.split(",") if p.strip()]
    return parts or None


def _csv_numbers(value: Optional[str]) -> Optional[list[float]]:
    out: list[float] = []
    for p in _csv(value) or []:
        try:
            n = float(p)
        except ValueError:
            continue
        if math.isfinite(n):
            out.append(n)
    return out or None


def _latlng(value: Optional[str], name: str) -> Optional[LatLng]:
    if not value:
        return None
    parts = value.split(",")
    if len(parts) != 2:
        bad_request("bad_discovery_request", f"{name} must be 'lat,lng'")
    try:
        lat, lng = float(parts[0]), float(parts[1])
    except ValueError:
        bad_request("bad_discovery_request", f"{name} must be 'lat,lng'")
    if not (math.isfinite(lat) and math.isfinite(lng)):
        bad_request("bad_discovery_request", f"{name} must be finite")
    return LatLng(lat=lat, lng=lng)


def _build_query(
    *,
    lat: Optional[float],
    lng: Optional[float],
    radius: Optional[float],
    limit: Optional[int],
    sw: Optional[str],
    ne: Optional[str],
    filters: DiscoveryFilters,
) -> DiscoveryQuery:
    sw_pt = _latlng(sw, "sw")
    ne_pt = _latlng(ne, "ne")
    bounds = Bounds(sw=sw_pt, ne=ne_pt) if sw_pt and ne_pt else None

    if lat is not None and lng is not None and math.isfinite(lat) and math.isfinite(lng):
        center = LatLng(lat=lat, lng=lng)
    elif bounds is not None:
        center = LatLng(
            lat=(bounds.sw.lat + bounds.ne.lat) / 2,
            lng=(bounds.sw.lng + bounds.ne.lng) / 2,
        )
    else:
        bad_request("bad_discovery_request", "Provide lat+lng or sw+ne bounds")

    return DiscoveryQuery(
        center=center,
        radius_m=radius,
        limit=int(limit or settings.discovery_default_limit),
        bounds=bounds,
        filters=filters,
    )


def _run(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except InvalidQueryError as e:
        bad_request("bad_discovery_request", str(e))
    except SupaError as e:
        logger.error("discovery_backend_failed err=%r", e)
        service_unavailable("discovery_unavailable", e.message)


# ──────────────────────────────────────────────────────────────
# /discovery/activities
# ──────────────────────────────────────────────────────────────

@router.get("/activities", response_model=DiscoveryResult)
def discovery_activities(
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: Optional[float] = None,
    limit: Optional[int] = Query(default=None, ge=1),
    sw: Optional[str] = None,
    ne: Optional[str] = None,
    types: Optional[str] = None,
    tags: Optional[str] = None,
    traits: Optional[str] = None,
    categories: Optional[str] = None,
    prices: Optional[str] = None,
    capacity: Optional[str] = None,
    time_window: Optional[str] = None,
    refresh: bool = False,
    discovery: Discovery = Depends(get_discovery_service),
) -> DiscoveryResult:
    filters = DiscoveryFilters(
        activity_types=_csv(types),
        tags=_csv(tags),
        traits=_csv(traits),
        taxonomy_categories=_csv(categories),
        price_levels=_csv_numbers(prices),
        capacity_key=capacity,
        time_window=time_window,
    )
    query = _build_query(lat=lat, lng=lng, radius=radius, limit=limit, sw=sw, ne=ne, filters=filters)
    return _run(discovery.discover_nearby_activities, query, bypass_cache=refresh)


# ──────────────────────────────────────────────────────────────
# /discovery/venues
# ──────────────────────────────────────────────────────────────

@router.get("/venues", response_model=VenueDiscovery)
def discovery_venues(
    activity: str,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    radius: Optional[float] = None,
    limit: Optional[int] = Query(default=None, ge=1),
    sw: Optional[str] = None,
    ne: Optional[str] = None,
    include_unverified: bool = True,
    discovery: Discovery = Depends(get_discovery_service),
) -> VenueDiscovery:
    if not activity.strip():
        bad_request("bad_discovery_request", "activity is required")
    query = _build_query(
        lat=lat,
        lng=lng,
        radius=radius,
        limit=limit or settings.venue_search_default_limit,
        sw=sw,
        ne=ne,
        filters=DiscoveryFilters(),
    )
    return _run(
        discovery.discover_nearby_venues,
        query,
        activity.strip(),
        include_unverified=include_unverified,
    )

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from nearby.core.contracts import DiscoveryItem, DiscoveryQuery, FilterSupport, NormalizedFilters, OverpassElement
from nearby.core.errors import SourceUnavailableError
from nearby.core.geo import haversine_m, normalize_radius, sanitize_coordinate
from nearby.core.settings import settings
from nearby.services.merge import normalize_place_label
from nearby.services.sources import SourceResult

logger = logging.getLogger(__name__)

# OSM carries schedule-free POIs: only its tag-derived dimensions are trustworthy.
OVERPASS_SUPPORT = FilterSupport(
    activity_types=True,
    tags=True,
    traits=False,
    taxonomy_categories=False,
    price_levels=False,
    capacity_key=False,
    time_window=False,
)

_LEISURE = "^(sports_centre|fitness_centre|stadium|pitch|park)$"
_AMENITY = "^(gym|sports_hall|swimming_pool|community_centre)$"


# ──────────────────────────────────────────────────────────────
# Query building
# ──────────────────────────────────────────────────────────────

def clamp_overpass_radius(radius_m: Optional[float]) -> int:
    r = normalize_radius(radius_m)
    return max(int(settings.overpass_min_radius_m), min(r, int(settings.overpass_max_radius_m)))


def element_cap(limit: int) -> int:
    return max(int(settings.overpass_min_elements), min(int(limit) * 3, int(settings.overpass_max_elements)))


def build_around_ql(*, lat: float, lng: float, radius_m: int, cap: int) -> str:
    around = f"(around:{radius_m},{lat},{lng})"
    parts = [
        f'node{around}["leisure"~"{_LEISURE}"];',
        f'node{around}["amenity"~"{_AMENITY}"];',
        f'node{around}["sport"];',
        f'way{around}["leisure"~"{_LEISURE}"];',
        f'way{around}["amenity"~"{_AMENITY}"];',
        f'way{around}["sport"];',
        f'relation{around}["sport"];',
    ]
    timeout_s = int(settings.overpass_timeout_s)
    return (
        f"[out:json][timeout:{timeout_s}];"
        f"("
        f"{''.join(parts)}"
        f");"
        f"out center {cap};"
    )


# ──────────────────────────────────────────────────────────────
# Fetch
# ──────────────────────────────────────────────────────────────

def _is_retryable_status(code: int) -> bool:
    return code in (429, 502, 503, 504)


def fetch_overpass_with_retries(
    *,
    client: httpx.Client,
    ql: str,
    url: Optional[str] = None,
    attempts: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    attempts = max(1, int(attempts if attempts is not None else settings.overpass_retries))
    base_sleep = float(settings.overpass_retry_base_s)
    url = url or settings.overpass_url

    last_exc: Optional[Exception] = None
    for i in range(attempts):
        backoff = base_sleep * (2 ** i) + random.random() * 0.25
        try:
            r = client.post(url, data={"data": ql})
        except httpx.HTTPError as e:
            last_exc = e
            if i + 1 < attempts:
                sleep(backoff)
            continue

        if _is_retryable_status(r.status_code):
            last_exc = SourceUnavailableError(f"Overpass request failed ({r.status_code})")
            if i + 1 < attempts:
                sleep(backoff)
            continue
        if r.status_code >= 400:
            raise SourceUnavailableError(f"Overpass request failed ({r.status_code})")
        try:
            payload = r.json()
        except ValueError as e:
            raise SourceUnavailableError("Overpass returned invalid JSON") from e
        return payload if isinstance(payload, dict) else {}

    if isinstance(last_exc, SourceUnavailableError):
        raise last_exc
    raise SourceUnavailableError(f"Overpass request failed ({last_exc!r})")


# ──────────────────────────────────────────────────────────────
# Element → item
# ──────────────────────────────────────────────────────────────

def _parse_tag_list(value: Optional[str]) -> List[str]:
    return [p.strip() for p in (value or "").split(";") if p.strip()]


def describe_venue(tags: Dict[str, str]) -> Optional[str]:
    parts = [p for p in (tags.get("addr:street"), tags.get("addr:city")) if p]
    if parts:
        return ", ".join(parts)
    return tags.get("addr:full") or tags.get("addr:neighbourhood") or None


def element_to_item(el: OverpassElement, *, origin_lat: float, origin_lng: float) -> Optional[DiscoveryItem]:
    lat, lng = sanitize_coordinate(el.lat), sanitize_coordinate(el.lon)
    if lat is None or lng is None:
        center = el.center or {}
        lat, lng = sanitize_coordinate(center.get("lat")), sanitize_coordinate(center.get("lon"))
    if lat is None or lng is None:
        return None

    tags = el.tags
    sports = _parse_tag_list(tags.get("sport"))
    leisure = _parse_tag_list(tags.get("leisure"))
    amenities = _parse_tag_list(tags.get("amenity"))
    clubs = _parse_tag_list(tags.get("club"))
    cuisine = _parse_tag_list(tags.get("cuisine"))

    label = (
        tags.get("name")
        or (sports[0] if sports else None)
        or (leisure[0] if leisure else None)
        or (amenities[0] if amenities else None)
        or tags.get("club")
        or "Local activity"
    )
    venue = describe_venue(tags)
    combined = list(dict.fromkeys(sports + leisure + amenities + clubs + cuisine + ["osm"]))

    return DiscoveryItem(
        id=f"{el.type}:{el.id}",
        name=label,
        venue=venue,
        place_id=None,
        place_label=normalize_place_label(venue, label),
        lat=float(lat),
        lng=float(lng),
        distance_m=haversine_m(origin_lat, origin_lng, float(lat), float(lng)),
        activity_types=sports or leisure or None,
        tags=combined,
        traits=None,
        source=OverpassSource.source,
    )


# ──────────────────────────────────────────────────────────────
# Source
# ──────────────────────────────────────────────────────────────

class OverpassSource:
    """
    OpenStreetMap points of interest around the query centre.

    Only consulted when the first-party sources come up short. Any transport
    or HTTP failure is raised as SourceUnavailableError so the caller can
    mark the response degraded.
    """

    source = "osm-overpass"

    def __init__(
        self,
        *,
        url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.url = url or settings.overpass_url
        self.timeout_s = float(timeout_s or settings.overpass_timeout_s)
        self.transport = transport
        self.sleep = sleep

    def fetch(self, query: DiscoveryQuery, filters: NormalizedFilters) -> SourceResult:
        radius = clamp_overpass_radius(query.radius_m)
        ql = build_around_ql(
            lat=query.center.lat,
            lng=query.center.lng,
            radius_m=radius,
            cap=element_cap(query.limit),
        )

        with httpx.Client(timeout=self.timeout_s, transport=self.transport) as client:
            data = fetch_overpass_with_retries(client=client, ql=ql, url=self.url, sleep=self.sleep)

        seen: set[str] = set()
        items: List[DiscoveryItem] = []
        for raw in data.get("elements") or []:
            try:
                el = OverpassElement.model_validate(raw)
            except ValidationError:
                continue
            key = f"{el.type}:{el.id}"
            if key in seen:
                continue
            seen.add(key)
            item = element_to_item(el, origin_lat=query.center.lat, origin_lng=query.center.lng)
            if item is not None:
                items.append(item)

        items.sort(key=lambda it: it.distance_m or 0.0)
        logger.info("overpass_fetch radius=%s elements=%s items=%s", radius, len(data.get("elements") or []), len(items))
        return SourceResult(
            items=items,
            support=OVERPASS_SUPPORT,
            source_name=self.source if items else None,
        )

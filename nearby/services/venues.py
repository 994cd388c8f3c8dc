from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from nearby.core.contracts import (
    Bounds,
    FilterSupport,
    RankedVenue,
    VenueCandidateRow,
    VenueSearchDebug,
)
from nearby.core.settings import settings
from nearby.core.supa import eq, gte, in_, lte, not_null
from nearby.services.sources import NegotiatingSource, OptionalField, SchemaCapabilities

logger = logging.getLogger(__name__)

VENUE_SUPPORT = FilterSupport(
    activity_types=True,
    tags=True,
    traits=False,
    taxonomy_categories=False,
    price_levels=False,
    capacity_key=False,
    time_window=False,
)


def clamp_venue_limit(limit: Optional[float]) -> int:
    if limit is None or not isinstance(limit, (int, float)) or not math.isfinite(limit) or limit <= 0:
        return int(settings.venue_search_default_limit)
    return max(1, min(int(settings.venue_search_max_limit), int(limit)))


def calculate_activity_score(
    *,
    ai_confidence: Optional[float],
    yes_votes: int,
    no_votes: int,
    category_match: bool,
    keyword_match: bool,
) -> float:
    base = max(0.0, min(1.0, ai_confidence or 0.0))
    score = base * 0.6 + yes_votes * 10 - no_votes * 10
    if category_match:
        score += 15
    if keyword_match:
        score += 5
    return round(score, 3)


def resolve_activity_confidence(scores: Optional[Dict[str, Any]], activity: str) -> Optional[float]:
    if not isinstance(scores, dict):
        return None
    value = scores.get(activity)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


def discovery_metadata(metadata: Optional[Dict[str, Any]]) -> tuple[List[str], List[str]]:
    """(categories, keywords) from metadata.discovery; empty when absent."""
    if not isinstance(metadata, dict):
        return [], []
    disc = metadata.get("discovery")
    if not isinstance(disc, dict):
        return [], []
    return _string_list(disc.get("categories")), _string_list(disc.get("keywords"))


def matches_discovery(values: List[str], activity: str) -> bool:
    needle = activity.lower()
    return any(needle in v.lower() for v in values)


def _contains(column: str, activity: str) -> str:
    return f"{column}.cs.{{{json.dumps(activity)}}}"


@dataclass
class VenueSearchResult:
    venues: List[RankedVenue]
    debug: VenueSearchDebug
    support: FilterSupport


class VenueSearch(NegotiatingSource):
    """
    Rank venues for one activity inside a bounding box.

    Candidates are venues whose AI tags or verified activities contain the
    activity; votes from `v_venue_activity_votes` and discovery metadata
    adjust the score.
    """

    table = "venues"
    base_columns = (
        "id",
        "name",
        "lat",
        "lng",
        "ai_activity_tags",
        "ai_confidence_scores",
        "verified_activities",
        "needs_verification",
        "metadata",
    )
    optional_fields = (
        OptionalField("address", "address"),
        OptionalField("rating", "rating"),
        OptionalField("price_level", "price_level"),
    )
    votes_view = "v_venue_activity_votes"

    def __init__(self, supa: Any, *, caps: Optional[SchemaCapabilities] = None) -> None:
        super().__init__(supa, caps=caps, max_attempts=settings.discovery_venue_schema_retries)

    def search(
        self,
        activity: str,
        *,
        bounds: Bounds,
        limit: Optional[int] = None,
        include_unverified: bool = True,
    ) -> VenueSearchResult:
        limit_applied = clamp_venue_limit(limit)

        rows, _ = self._select_negotiated(
            wanted=[f.name for f in self.optional_fields],
            filters=[
                not_null("lat"),
                not_null("lng"),
                gte("lat", bounds.sw.lat),
                lte("lat", bounds.ne.lat),
                gte("lng", bounds.sw.lng),
                lte("lng", bounds.ne.lng),
                ("or", f"({_contains('ai_activity_tags', activity)},{_contains('verified_activities', activity)})"),
            ],
            limit=max(limit_applied * 2, limit_applied + 5),
        )

        candidates: List[VenueCandidateRow] = []
        for raw in rows:
            try:
                row = VenueCandidateRow.model_validate(raw)
            except ValidationError:
                continue
            verified = activity in _string_list(row.verified_activities)
            tagged = activity in _string_list(row.ai_activity_tags)
            if not (verified or tagged):
                continue
            if not include_unverified and not verified:
                continue
            candidates.append(row)

        votes = self._vote_map([r.id for r in candidates], activity)
        ranked = [self._rank(row, activity, votes.get(row.id)) for row in candidates]
        ranked.sort(key=lambda v: v.score, reverse=True)
        ranked = ranked[:limit_applied]

        debug = VenueSearchDebug(
            limit_applied=limit_applied,
            venue_count=len(candidates),
            vote_count=len(votes),
        )
        logger.info(
            "venue_search activity=%s venues=%s votes=%s returned=%s",
            activity, debug.venue_count, debug.vote_count, len(ranked),
        )
        return VenueSearchResult(venues=ranked, debug=debug, support=VENUE_SUPPORT)

    def _vote_map(self, venue_ids: List[str], activity: str) -> Dict[str, tuple[int, int]]:
        out: Dict[str, tuple[int, int]] = {}
        if not venue_ids:
            return out
        rows = self.supa.select(
            self.votes_view,
            ["venue_id", "activity_name", "yes_votes", "no_votes"],
            filters=[eq("activity_name", activity), in_("venue_id", venue_ids)],
        )
        for r in rows or []:
            vid = r.get("venue_id")
            if vid:
                out[vid] = (int(r.get("yes_votes") or 0), int(r.get("no_votes") or 0))
        return out

    def _rank(self, row: VenueCandidateRow, activity: str, votes: Optional[tuple[int, int]]) -> RankedVenue:
        verified = activity in _string_list(row.verified_activities)
        tagged = activity in _string_list(row.ai_activity_tags)
        categories, keywords = discovery_metadata(row.metadata)
        category_match = matches_discovery(categories, activity)
        keyword_match = matches_discovery(keywords, activity)

        confidence = resolve_activity_confidence(row.ai_confidence_scores, activity)
        if confidence is None:
            confidence = 1.0 if verified else 0.0
        yes, no = votes or (0, 0)

        return RankedVenue(
            venue_id=row.id,
            venue_name=row.name or "Unnamed venue",
            lat=row.lat,
            lng=row.lng,
            display_address=row.address,
            primary_categories=categories,
            rating=row.rating,
            price_level=row.price_level,
            activity=activity,
            ai_confidence=confidence,
            user_yes_votes=yes,
            user_no_votes=no,
            category_match=category_match,
            keyword_match=keyword_match,
            score=calculate_activity_score(
                ai_confidence=confidence,
                yes_votes=yes,
                no_votes=no,
                category_match=category_match,
                keyword_match=keyword_match,
            ),
            verified=verified,
            needs_verification=bool(row.needs_verification and tagged and not verified),
        )

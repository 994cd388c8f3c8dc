from __future__ import annotations

import pytest

from nearby.core.errors import SourceUnavailableError, SupaError
from nearby.core.keying import normalize_filters
from nearby.services.sources import (
    ActivitiesTableSource,
    SchemaCapabilities,
    SpatialIndexSource,
    VenueTableSource,
)
from tests.helpers import CENTER, make_query, north_of


def _activity(id: str, meters: float, **kw) -> dict:
    lat, lng = north_of(CENTER, meters)
    row = {"id": id, "name": f"Activity {id}", "venue": "Hall", "lat": lat, "lng": lng}
    row.update(kw)
    return row


# ──────────────────────────────────────────────────────────────
# Spatial RPC
# ──────────────────────────────────────────────────────────────

def test_spatial_maps_rows_and_drops_seeds(fake_supa):
    lat, lng = north_of(CENTER, 150)
    fake_supa.rpcs["activities_nearby"] = [
        {"id": "a1", "name": "Bouldering", "lat_out": lat, "lng_out": lng, "distance_m": 150.0, "tags": ["indoor"]},
        {"id": "a2", "name": "Seeded", "lat": lat, "lng": lng, "tags": ["seed"]},
        {"id": "a3", "name": "No coords"},
    ]
    res = SpatialIndexSource(fake_supa).fetch(make_query(), normalize_filters({"tags": ["indoor"]}))

    assert [it.id for it in res.items] == ["a1"]
    assert res.items[0].lat == pytest.approx(lat)
    assert res.source_name == "postgis"
    (call,) = [c for c in fake_supa.calls if c["op"] == "rpc"]
    assert call["payload"]["tags"] == ["indoor"]
    assert call["payload"]["radius_m"] == 2000
    assert "types" not in call["payload"]


def test_spatial_failure_is_empty_with_full_support(fake_supa):
    fake_supa.fail("rpc:activities_nearby", SupaError("function activities_nearby does not exist", code="42883"))
    res = SpatialIndexSource(fake_supa).fetch(make_query(), normalize_filters(None))
    assert res.items == []
    assert res.source_name is None
    assert res.error
    assert all(res.support.model_dump().values())


# ──────────────────────────────────────────────────────────────
# Activities table
# ──────────────────────────────────────────────────────────────

def test_missing_column_is_dropped_and_reported(fake_supa, clock):
    fake_supa.tables["activities"] = [_activity("a1", 100, tags=["x"], activity_types=["climbing"])]
    fake_supa.fail("activities", SupaError("column activities.tags does not exist", code="42703"))
    source = ActivitiesTableSource(fake_supa, clock=clock)

    res = source.fetch(make_query(), normalize_filters(None))

    assert [it.id for it in res.items] == ["a1"]
    assert res.items[0].tags is None
    assert res.items[0].activity_types == ["climbing"]
    assert res.support.tags is False
    assert res.support.activity_types is True
    assert "tags" in res.dropped

    first, second = fake_supa.selects("activities")
    assert "tags" in first["columns"]
    assert "tags" not in second["columns"]
    assert source.caps.missing() == frozenset({"tags"})

    # remembered: the next call does not retry the missing column
    source.fetch(make_query(), normalize_filters(None))
    assert len(fake_supa.selects("activities")) == 3
    assert "tags" not in fake_supa.selects("activities")[2]["columns"]

    source.caps.reset()
    assert source.caps.available("tags")


def test_preference_relationship_only_requested_for_trait_filters(fake_supa, clock):
    fake_supa.tables["activities"] = [
        _activity("a1", 100, traits=["chill"], participant_preferences=[{"preferred_traits": ["social", "chill"]}]),
    ]
    source = ActivitiesTableSource(fake_supa, clock=clock)

    source.fetch(make_query(), normalize_filters(None))
    assert not any("participant_preferences" in c for c in fake_supa.selects("activities")[0]["columns"])

    res = source.fetch(make_query(), normalize_filters({"traits": ["social"]}))
    assert any(c.startswith("participant_preferences:") for c in fake_supa.selects("activities")[1]["columns"])
    assert res.items[0].traits == ["chill", "social"]


def test_missing_relationship_keeps_trait_support_from_column(fake_supa, clock):
    fake_supa.tables["activities"] = [_activity("a1", 100, traits=["chill"])]
    fake_supa.fail(
        "activities",
        SupaError(
            "Could not find a relationship between 'activities' and 'activity_participant_preferences' in the schema cache",
            code="PGRST200",
        ),
    )
    res = ActivitiesTableSource(fake_supa, clock=clock).fetch(make_query(), normalize_filters({"traits": ["chill"]}))
    assert res.support.traits is True
    assert res.dropped == frozenset({"participant_preferences"})


def test_retry_budget_is_bounded(fake_supa, clock):
    fake_supa.tables["activities"] = [_activity("a1", 100)]
    for col in ("activity_types", "tags", "traits"):
        fake_supa.fail("activities", SupaError(f"column activities.{col} does not exist", code="42703"))
    source = ActivitiesTableSource(fake_supa, clock=clock, max_attempts=2)
    with pytest.raises(SupaError):
        source.fetch(make_query(), normalize_filters(None))
    assert len(fake_supa.selects("activities")) == 2


def test_ambiguous_column_is_temporarily_unavailable(fake_supa, clock):
    fake_supa.fail("activities", SupaError('column reference "lat" is ambiguous', code="42702"))
    with pytest.raises(SourceUnavailableError):
        ActivitiesTableSource(fake_supa, clock=clock).fetch(make_query(), normalize_filters(None))


def test_radius_cut_order_limit_and_upcoming_counts(fake_supa, clock):
    fake_supa.tables["activities"] = [
        _activity("far", 5000),
        _activity("b", 300),
        _activity("a", 100),
        _activity("c", 900),
        _activity("seeded", 50, venue="Seeded Spot"),
    ]
    fake_supa.tables["sessions"] = [{"activity_id": "a"}, {"activity_id": "a"}, {"activity_id": "b"}]

    res = ActivitiesTableSource(fake_supa, clock=clock).fetch(make_query(limit=2), normalize_filters(None))

    assert [it.id for it in res.items] == ["a", "b"]
    assert [it.upcoming_session_count for it in res.items] == [2, 1]
    assert all(it.source == "activities" for it in res.items)


def test_explicit_capabilities_are_shared(fake_supa, clock):
    caps = SchemaCapabilities()
    caps.mark_missing("place_label")
    fake_supa.tables["activities"] = [_activity("a1", 100)]
    ActivitiesTableSource(fake_supa, caps=caps, clock=clock).fetch(make_query(), normalize_filters(None))
    assert "place_label" not in fake_supa.selects("activities")[0]["columns"]


# ──────────────────────────────────────────────────────────────
# Venue table
# ──────────────────────────────────────────────────────────────

def test_venue_table_items_and_order_negotiation(fake_supa):
    lat, lng = north_of(CENTER, 400)
    fake_supa.tables["venues"] = [
        {"id": "v1", "name": " ", "address": "1 Main St", "lat": str(lat), "lng": str(lng), "verified_activities": ["climbing"]},
        {"id": "v2", "name": "Bad coords", "lat": "n/a", "lng": 1.0},
        {"id": None, "name": "No id", "lat": lat, "lng": lng},
    ]
    fake_supa.fail("venues", SupaError("column venues.updated_at does not exist", code="42703"))

    res = VenueTableSource(fake_supa).fetch(make_query(), normalize_filters(None))

    assert [it.id for it in res.items] == ["venue:v1"]
    item = res.items[0]
    assert item.name == "Nearby venue"
    assert item.place_label == "1 Main St"
    assert item.activity_types == ["climbing"]
    assert item.distance_m == pytest.approx(400, rel=0.01)
    assert res.source_name == "supabase-venues"
    assert res.support.activity_types and res.support.tags
    assert not res.support.price_levels

    first, second = fake_supa.selects("venues")
    assert first["order"] == "updated_at.desc"
    assert second["order"] is None
    assert first["limit"] == 40

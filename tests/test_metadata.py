from __future__ import annotations

import pytest

from nearby.core.contracts import DiscoveryItem
from nearby.core.errors import SupaError
from nearby.services.metadata import (
    MetadataHydrator,
    derive_capacity_key,
    derive_price_level,
    derive_taxonomy_categories,
    derive_time_window,
    is_uuid,
    pick_capacity_key,
)
from tests.helpers import NOW

ACT_A = "5b0c1e2a-8f5d-4c1b-9a53-0a3f7c8d9e01"
ACT_B = "5b0c1e2a-8f5d-4c1b-9a53-0a3f7c8d9e02"


def _item(id: str, **kw) -> DiscoveryItem:
    return DiscoveryItem(id=id, name=id, lat=0.0, lng=0.0, source="activities", **kw)


@pytest.mark.parametrize(
    "cents,level",
    [(0, 1), (2000, 1), (2001, 2), (5000, 2), (10000, 3), (10001, 4), (None, None)],
)
def test_price_tiers(cents, level):
    assert derive_price_level(cents) == level


@pytest.mark.parametrize(
    "attendees,key",
    [(1, None), (2, "couple"), (5, "small"), (8, "medium"), (10, "large"), (0, None), (None, None)],
)
def test_capacity_buckets(attendees, key):
    assert derive_capacity_key(attendees) == key


def test_pick_capacity_keeps_higher_tier():
    assert pick_capacity_key("small", "couple") == "small"
    assert pick_capacity_key("small", "large") == "large"
    assert pick_capacity_key(None, "couple") == "couple"
    assert pick_capacity_key("medium", None) == "medium"


def test_time_window_open_now_and_local_hour():
    assert derive_time_window("2026-03-02T09:30:00Z", None, NOW).window == "open_now"
    assert derive_time_window("2026-03-02T08:00:00Z", "2026-03-02T08:30:00Z", NOW).window == "morning"
    # 23:00 UTC, but 08:00 at the written offset
    assert derive_time_window("2026-03-04T08:00:00+09:00", None, NOW).window == "morning"
    assert derive_time_window("2026-03-04T23:30:00Z", None, NOW).window == "late"
    assert derive_time_window("not a date", None, NOW).window is None


def test_taxonomy_categories_never_fabricated():
    assert derive_taxonomy_categories(_item("x", activity_types=["tier3-climbing", "Climbing"])) == ["tier3-climbing"]
    assert derive_taxonomy_categories(_item("x", tags=["TIER1-outdoor", "tier2-b", "tier2-b"])) == ["TIER1-outdoor", "tier2-b"]
    assert derive_taxonomy_categories(_item("x", taxonomy_categories=["tier1-a"], activity_types=["tier2-b"])) == ["tier1-a"]
    assert derive_taxonomy_categories(_item("x", activity_types=["yoga"])) is None


def test_is_uuid():
    assert is_uuid(ACT_A)
    assert not is_uuid("node:123")
    assert not is_uuid("venue:abc")


def test_hydrate_from_sessions(fake_supa, clock):
    fake_supa.tables["sessions"] = [
        {"activity_id": ACT_A, "starts_at": "2026-03-03T18:30:00+00:00", "price_cents": 1500, "max_attendees": 6},
        {"activity_id": ACT_A, "starts_at": "2026-03-05T07:00:00+00:00", "price_cents": 4000, "max_attendees": 12},
        {"activity_id": ACT_B, "starts_at": "2026-03-02T09:30:00Z", "ends_at": None, "price_cents": 0},
        {"activity_id": None, "starts_at": "2026-03-02T09:30:00Z"},
    ]
    items = [_item(ACT_A), _item(ACT_B, capacity_key="couple"), _item("node:1", price_levels=[2])]

    result = MetadataHydrator(fake_supa, clock=clock).hydrate(items)
    a, b, osm = result.items

    assert a.price_levels == [1, 2]
    assert a.capacity_key == "large"
    assert a.time_window == "evening"

    assert b.time_window == "open_now"
    assert b.price_levels == [1]
    assert b.capacity_key == "couple"

    assert osm.price_levels == [2]
    assert osm.time_window is None

    assert result.support.price_levels and result.support.capacity_key and result.support.time_window

    (call,) = fake_supa.selects("sessions")
    assert ("activity_id", f"in.({ACT_A},{ACT_B})") in call["filters"]
    assert call["limit"] == 5000


def test_session_failure_marks_metadata_unsupported(fake_supa, clock):
    fake_supa.fail("sessions", SupaError("permission denied for table sessions", code="42501"))
    items = [_item(ACT_A, activity_types=["tier1-x"])]

    result = MetadataHydrator(fake_supa, clock=clock).hydrate(items)

    assert result.support.price_levels is False
    assert result.support.capacity_key is False
    assert result.support.time_window is False
    assert result.support.taxonomy_categories is True
    assert result.items[0].taxonomy_categories == ["tier1-x"]


def test_non_uuid_items_skip_the_sessions_read(fake_supa, clock):
    MetadataHydrator(fake_supa, clock=clock).hydrate([_item("node:1"), _item("venue:2")])
    assert fake_supa.selects("sessions") == []

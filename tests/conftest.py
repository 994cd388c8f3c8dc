from __future__ import annotations

from typing import Callable, Optional

import pytest

from nearby.core.storage import connect_sqlite
from nearby.services.discovery import Discovery
from nearby.services.metadata import MetadataHydrator
from nearby.services.overpass import OverpassSource
from nearby.services.sources import ActivitiesTableSource, SpatialIndexSource, VenueTableSource
from nearby.services.tile_cache import SqliteTileStore, TileCache
from nearby.services.venues import VenueSearch
from tests.helpers import FakeSupa, MutableClock, overpass_transport


@pytest.fixture
def fake_supa() -> FakeSupa:
    return FakeSupa()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def tile_cache(clock):
    conn = connect_sqlite(":memory:")
    cache = TileCache(SqliteTileStore(conn, clock=clock), clock=clock)
    yield cache
    cache.close()
    conn.close()


@pytest.fixture
def make_discovery(fake_supa, tile_cache, clock) -> Callable[..., Discovery]:
    def _make(*, overpass: Optional[OverpassSource] = None) -> Discovery:
        return Discovery(
            supa=fake_supa,
            cache=tile_cache,
            spatial=SpatialIndexSource(fake_supa),
            activities=ActivitiesTableSource(fake_supa, clock=clock),
            overpass=overpass or OverpassSource(transport=overpass_transport(), sleep=lambda s: None),
            venue_table=VenueTableSource(fake_supa),
            hydrator=MetadataHydrator(fake_supa, clock=clock),
            venue_search=VenueSearch(fake_supa),
        )

    return _make

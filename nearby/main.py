# nearby/main.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware

# Load <repo>/.env (main.py is <repo>/nearby/main.py)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(BASE_DIR / ".env")

from nearby.core.errors import service_unavailable
from nearby.core.settings import settings
from nearby.core.storage import connect_sqlite
from nearby.core.supa import SupaRest
from nearby.api import api_router

from nearby.services.discovery import Discovery
from nearby.services.metadata import MetadataHydrator
from nearby.services.overpass import OverpassSource
from nearby.services.sources import ActivitiesTableSource, SpatialIndexSource, VenueTableSource
from nearby.services.tile_cache import SqliteTileStore, SupaTileStore, TileCache, TileStore
from nearby.services.venues import VenueSearch

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Nearby Discovery", version="1.0.0")

app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ──────────────────────────────────────────────────────────────
# Services
# ──────────────────────────────────────────────────────────────

_cache_conn = None
_discovery: Optional[Discovery] = None


def _build_tile_store(supa: SupaRest) -> TileStore:
    global _cache_conn
    if settings.discovery_cache_backend == "supa":
        return SupaTileStore(supa)
    _cache_conn = connect_sqlite(settings.cache_db_path)
    return SqliteTileStore(_cache_conn)


def build_discovery() -> Discovery:
    supa = SupaRest()
    return Discovery(
        supa=supa,
        cache=TileCache(_build_tile_store(supa)),
        spatial=SpatialIndexSource(supa),
        activities=ActivitiesTableSource(supa),
        overpass=OverpassSource(),
        venue_table=VenueTableSource(supa),
        hydrator=MetadataHydrator(supa),
        venue_search=VenueSearch(supa),
    )


# ──────────────────────────────────────────────────────────────
# Dependency providers
# ──────────────────────────────────────────────────────────────

def provide_discovery_service() -> Discovery:
    global _discovery
    if _discovery is None:
        try:
            _discovery = build_discovery()
        except RuntimeError as e:
            logger.error("[app] discovery unavailable: %s", e)
            service_unavailable("discovery_unconfigured", str(e))
    return _discovery


# ──────────────────────────────────────────────────────────────
# Dependency overrides
# ──────────────────────────────────────────────────────────────

from nearby.api import discovery as discovery_api

app.dependency_overrides[discovery_api.get_discovery_service] = provide_discovery_service

# Routes
app.include_router(api_router)

# ──────────────────────────────────────────────────────────────
# Shutdown
# ──────────────────────────────────────────────────────────────

@app.on_event("shutdown")
def shutdown():
    logger.info("[app] Shutting down, draining cache writes")
    if _discovery is not None:
        try:
            _discovery.cache.close()
        except Exception as e:
            logger.warning(f"[app] Error draining tile cache: {e}")
    if _cache_conn is not None:
        try:
            _cache_conn.close()
        except Exception:
            pass

"""Shared fixtures: an in-memory SQLite database per test and a small feed catalog."""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from estatefeed.database import build_engine, init_db
from estatefeed.models import catalog_models, feed_models  # noqa: F401
from estatefeed.sync.engine import ReconciliationEngine

T0 = datetime(2026, 3, 1, 3, 0, tzinfo=timezone.utc)


def oid(prefix: str, n: int = 1) -> str:
    """24-character feed object id, e.g. oid("blk", 1)."""
    return f"{prefix:0<20}{n:04d}"


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session(db_engine):
    with Session(db_engine) as session:
        yield session


@pytest.fixture
def lock_db_url(tmp_path):
    """A file database, so several engines can share it like separate workers."""
    return f"sqlite:///{tmp_path / 'locks.db'}"


@pytest.fixture
def lock_engine(lock_db_url):
    engine = build_engine(lock_db_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def ids():
    return SimpleNamespace(
        region=oid("reg"),
        builder=oid("bld"),
        finishing=oid("fin"),
        building_type=oid("btp"),
        subway=oid("sub"),
        block=oid("blk"),
        building=oid("bdg"),
    )


@pytest.fixture
def reference_feed(ids):
    """Decoded entity files for one complex with one building."""
    return {
        "regions": [{"_id": ids.region, "crm_id": 11, "name": "Presnensky"}],
        "builders": [
            {"_id": ids.builder, "crm_id": 21, "name": "Capital Group", "logo": "https://cdn/logo.png"}
        ],
        "finishings": [{"_id": ids.finishing, "crm_id": 31, "name": "Turnkey"}],
        "building_types": [{"_id": ids.building_type, "crm_id": 41, "name": "Monolith"}],
        "rooms": [
            {"_id": oid("room", 0), "crm_id": 0, "name": "Studio"},
            {"_id": oid("room", 1), "crm_id": 1, "name": "1-room"},
            {"_id": oid("room", 2), "crm_id": 2, "name": "2-room"},
        ],
        "subways": [{"_id": ids.subway, "crm_id": 51, "name": "Barrikadnaya"}],
        "blocks": [
            {
                "_id": ids.block,
                "crm_id": 61,
                "name": "River Park",
                "district": ids.region,
                "builder": ids.builder,
                "address": ["Moscow", "Krasnopresnenskaya 1"],
                "geometry": {"type": "Point", "coordinates": [37.5812345, 55.7601234]},
                "deadline": "2027-12-31",
                "renderer": ["https://cdn/r1.jpg", "https://cdn/r2.jpg"],
                "subway": [{"subway_id": ids.subway, "distance_time": 7, "distance_type": 1}],
            }
        ],
        "buildings": [
            {
                "_id": ids.building,
                "crm_id": 71,
                "block_id": ids.block,
                "name": "1",
                "building_type": ids.building_type,
                "floors": 24,
                "deadline": "2027-06-30T00:00:00.000Z",
                "queue": 1,
                "building_bank": ["Sber", "VTB"],
            }
        ],
    }


def apartment(ids, n: int = 1, **overrides) -> dict:
    record = {
        "_id": oid("apt", n),
        "crm_id": 1000 + n,
        "building_id": ids.building,
        "block_id": ids.block,
        "room": 1,
        "floor": 5,
        "floors": 24,
        "number": str(100 + n),
        "area_total": "40.5",
        "area_kitchen": 10,
        "price": 5000000,
        "finishing": ids.finishing,
        "building_type": ids.building_type,
        "plan": ["https://cdn/plan.png"],
    }
    record.update(overrides)
    return record


def load_reference(session, feed: dict) -> ReconciliationEngine:
    """Upsert everything above apartments, in dependency order."""
    engine = ReconciliationEngine(session)
    engine.upsert_regions(feed["regions"])
    engine.upsert_builders(feed["builders"])
    engine.upsert_finishings(feed["finishings"])
    engine.upsert_building_types(feed["building_types"])
    engine.upsert_rooms(feed["rooms"])
    engine.upsert_subways(feed["subways"])
    engine.upsert_blocks(feed["blocks"])
    engine.upsert_buildings(feed["buildings"])
    return engine


@pytest.fixture
def loaded(session, reference_feed):
    return load_reference(session, reference_feed)

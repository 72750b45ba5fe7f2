from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import T0, apartment, oid
from estatefeed.api import feed_routes
from estatefeed.database import get_session
from estatefeed.feed.client import FeedClient
from estatefeed.feed.schema_inspector import SchemaInspector
from estatefeed.feed.schema_store import SchemaObservationStore
from estatefeed.main import app
from estatefeed.scheduler import jobs
from estatefeed.scheduler.guard import JobAlreadyRunning, JobGuard
from estatefeed.sync import pipeline

FEED_URL = "https://feed.example.com/export/apartments.json"


@pytest.fixture
def client(session, loaded, ids, lock_engine, monkeypatch):
    loaded.upsert_apartments(
        [
            apartment(ids, 1, room=0, price="4500000", area_total="25.3", floor=3),
            apartment(ids, 2, room=1, price="6200000", area_total="41", floor=10),
            apartment(ids, 3, room=2, price="9900000", area_total="64.7", floor=18),
        ],
        T0,
    )
    loaded.upsert_apartments([apartment(ids, 4, room=1, price="100")], T0 - timedelta(days=1))
    loaded.mark_stale_apartments(T0)

    monkeypatch.setattr(jobs, "guard", JobGuard(lock_engine))
    app.dependency_overrides[get_session] = lambda: session
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"


def test_listing_excludes_deleted_and_paginates(client):
    body = client.get("/api/v1/apartments", params={"per_page": 2}).json()

    assert body["meta"] == {"total": 3, "page": 1, "per_page": 2, "last_page": 2}
    assert [a["id"] for a in body["data"]] == [oid("apt", 1), oid("apt", 2)]
    assert body["data"][0]["price"] == "4500000.00"


def test_listing_filters(client, ids):
    resp = client.get(
        "/api/v1/apartments",
        params=[
            ("room", "1"),
            ("room", "2"),
            ("price_min", "5000000"),
            ("district", ids.region),
            ("sort", "area_total"),
            ("order", "desc"),
        ],
    )

    assert resp.status_code == 200
    assert [a["id"] for a in resp.json()["data"]] == [oid("apt", 3), oid("apt", 2)]


def test_price_max_filter(client):
    body = client.get("/api/v1/apartments", params={"price_max": "6000000"}).json()
    assert [a["id"] for a in body["data"]] == [oid("apt", 1)]


def test_search_and_geo(client):
    near = client.get(
        "/api/v1/apartments",
        params={"lat": 55.76, "lng": 37.58, "radius": 1000, "search": "river"},
    ).json()
    far = client.get(
        "/api/v1/apartments", params={"lat": 59.93, "lng": 30.31, "radius": 5000}
    ).json()

    assert near["meta"]["total"] == 3
    assert far["meta"]["total"] == 0


@pytest.mark.parametrize(
    "params",
    [
        {"per_page": 500},
        {"price_min": -1},
        {"district": "short"},
        {"sort": "crm_id"},
        {"order": "sideways"},
        {"floor_min": 0},
        {"deadline_from": "31.12.2027"},
        {"radius": 50, "lat": 55.7, "lng": 37.6},
        {"lat": 55.7},
        {"search": "x" * 201},
        {"price_min": 9, "price_max": 1},
    ],
)
def test_invalid_filters_are_rejected(client, params):
    resp = client.get("/api/v1/apartments", params=params)

    assert resp.status_code == 422
    assert isinstance(resp.json()["detail"], list)


def test_show_apartment(client):
    resp = client.get(f"/api/v1/apartments/{oid('apt', 2)}")

    assert resp.status_code == 200
    assert resp.json()["data"]["area_total"] == "41.00"


def test_show_missing_or_deleted_apartment_is_404(client):
    assert client.get(f"/api/v1/apartments/{oid('apt', 404)}").status_code == 404
    assert client.get(f"/api/v1/apartments/{oid('apt', 4)}").status_code == 404


def test_filters_endpoint(client, ids):
    data = client.get("/api/v1/filters").json()["data"]

    assert [r["id"] for r in data["rooms"]] == [0, 1, 2]
    assert data["districts"] == [{"id": ids.region, "name": "Presnensky"}]
    assert data["builders"] == [{"id": ids.builder, "name": "Capital Group"}]
    assert data["finishings"] == [{"id": ids.finishing, "name": "Turnkey"}]
    assert data["price"] == {"min": "4500000.00", "max": "9900000.00"}
    assert data["floor"] == {"min": 3, "max": 18}


def test_feed_snapshots_and_schema_empty(client):
    assert client.get("/feed/snapshots").json()["count"] == 0
    resp = client.get("/feed/schema", params={"url": "https://feed.example.com/a.json"})
    assert resp.status_code == 404


def test_feed_sync_dry_run_without_endpoints(client):
    resp = client.post("/feed/sync", json={"dry_run": True, "endpoints": []})

    assert resp.status_code == 200
    assert resp.json()["summary"]["sources"] == []


def test_feed_trigger_conflict_returns_409(client, monkeypatch):
    async def busy(*args, **kwargs):
        raise JobAlreadyRunning("sync")

    monkeypatch.setattr(feed_routes, "run_sync", busy)

    resp = client.post("/feed/sync", json={})

    assert resp.status_code == 409


def test_feed_sync_returns_502_when_nothing_downloads(client, monkeypatch):
    def unreachable_feed():
        return FeedClient(
            auth_mode="none",
            retry_times=0,
            retry_sleep_ms=0,
            transport=httpx.MockTransport(lambda request: httpx.Response(404)),
        )

    monkeypatch.setattr(pipeline, "FeedClient", unreachable_feed)

    resp = client.post("/feed/sync", json={"endpoints": [FEED_URL]})

    assert resp.status_code == 502
    assert resp.json()["detail"].startswith("Feed fetch failed")


def test_feed_schema_reports_entities_and_relationships(client, session):
    payload = [
        {"_id": "a1", "building_id": "b1", "status": "free"},
        {"_id": "a2", "building_id": "b1", "status": "sold"},
    ]
    SchemaObservationStore(session).persist(FEED_URL, SchemaInspector().inspect(payload))

    body = client.get("/feed/schema", params={"url": FEED_URL}).json()

    assert body["count"] == 4
    assert [e["name"] for e in body["entities"]] == ["apartments"]
    assert body["entities"][0]["id_field"] == "[]._id"
    assert body["id_fields"] == ["[]._id", "[].building_id"]
    assert body["enum_candidates"] == {"[].status": {"free": 1, "sold": 1}}
    assert body["relationships"] == [
        {
            "from": "[]",
            "to": None,
            "type": "unresolved_fk",
            "via": "foreign_key",
            "confidence": 0.5,
            "field": "[].building_id",
            "target_hint": "building",
        }
    ]
    assert body["hierarchy"]["name"] == "apartments"

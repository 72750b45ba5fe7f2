import json
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
from sqlmodel import select

from conftest import T0, apartment, oid
from estatefeed.config import settings
from estatefeed.core.errors import FetchError
from estatefeed.feed.client import FeedClient
from estatefeed.feed.parsing import url_hash
from estatefeed.models.catalog_models import Apartment
from estatefeed.models.feed_models import FeedSnapshot, SchemaFieldObservation
from estatefeed.queries.apartments import ApartmentFilters, search_apartments
from estatefeed.sync import pipeline

BASE = "https://feed.example.com/export"
FILE_KEYS = {filename: key for key, filename in pipeline.ENTITY_FILES}


class FakeFeed:
    """Serves the nine entity files from an in-memory dict."""

    def __init__(self, files: dict):
        self.files = files
        self.missing = set()
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        filename = request.url.path.rsplit("/", 1)[-1]
        key = FILE_KEYS.get(filename)
        if key is None or key in self.missing:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, content=json.dumps(self.files.get(key, [])).encode())

    def client(self) -> FeedClient:
        return FeedClient(
            auth_mode="none",
            retry_times=0,
            retry_sleep_ms=0,
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def feed(reference_feed, ids):
    files = dict(reference_feed)
    files["apartments"] = [apartment(ids, 1, price="5000000.00")]
    return FakeFeed(files)


@pytest.fixture
def clock(monkeypatch):
    """Controls the sync timestamp captured by the pipeline."""
    state = {"now": T0}
    monkeypatch.setattr(pipeline, "utc_now", lambda: state["now"])
    return state


def test_base_url_and_sources():
    assert pipeline.base_url(f"{BASE}/apartments.json") == BASE
    assert pipeline.base_url(f"{BASE}/") == BASE
    assert pipeline.feed_sources(
        [f"{BASE}/apartments.json", f"{BASE}/blocks.json", "https://other.example/feed.json"]
    ) == [BASE, "https://other.example"]


def test_extract_records():
    assert pipeline.extract_records([1]) == [1]
    assert pipeline.extract_records({"data": [1, 2]}) == [1, 2]
    assert pipeline.extract_records({"error": "nope"}) is None


@pytest.mark.asyncio
async def test_two_runs_mark_missing_apartment_stale(session, feed, ids, clock):
    endpoints = [f"{BASE}/apartments.json"]

    first = await pipeline.sync(session, endpoints=endpoints, client=feed.client())

    a = session.get(Apartment, oid("apt", 1))
    assert first.upserted > 0
    assert first.failed_records == 0
    assert a.is_deleted is False
    assert a.price == Decimal("5000000.00")
    assert a.feed_source == url_hash(BASE)

    feed.files["apartments"] = [apartment(ids, 2, price="7000000")]
    clock["now"] = T0 + timedelta(hours=1)
    second = await pipeline.sync(session, endpoints=endpoints, client=feed.client())

    session.expire_all()
    a = session.get(Apartment, oid("apt", 1))
    b = session.get(Apartment, oid("apt", 2))
    assert second.stale_marked == 1
    assert a.is_deleted is True
    assert b.is_deleted is False

    page = search_apartments(session, ApartmentFilters(price_max=Decimal("6000000")))
    assert page.total == 0
    assert page.items == []
    page = search_apartments(
        session, ApartmentFilters(price_max=Decimal("5000000")), include_deleted=True
    )
    assert [x.id for x in page.items] == [oid("apt", 1)]


@pytest.mark.asyncio
async def test_failed_apartments_download_skips_stale_pass(session, feed, ids, clock):
    endpoints = [f"{BASE}/apartments.json"]
    await pipeline.sync(session, endpoints=endpoints, client=feed.client())

    feed.missing.add("apartments")
    clock["now"] = T0 + timedelta(hours=1)
    summary = await pipeline.sync(session, endpoints=endpoints, client=feed.client())

    source = summary.sources[0]
    assert source.stale_marked is None
    assert "apartments" in source.fetch_errors
    session.expire_all()
    assert session.get(Apartment, oid("apt", 1)).is_deleted is False


@pytest.mark.asyncio
async def test_sync_snapshots_each_file(session, feed, clock):
    await pipeline.sync(session, endpoints=[f"{BASE}/apartments.json"], client=feed.client())

    snapshots = session.exec(select(FeedSnapshot)).all()
    assert len(snapshots) == len(pipeline.ENTITY_FILES)
    assert {s.source_url for s in snapshots} == {
        f"{BASE}/{filename}" for _, filename in pipeline.ENTITY_FILES
    }


@pytest.mark.asyncio
async def test_dry_run_counts_without_writing(session, feed, clock):
    summary = await pipeline.sync(
        session, dry_run=True, endpoints=[f"{BASE}/apartments.json"], client=feed.client()
    )

    assert summary.dry_run is True
    assert summary.sources[0].downloaded["apartments"] == 1
    assert summary.sources[0].downloaded["rooms"] == 3
    assert session.exec(select(Apartment)).all() == []
    assert session.exec(select(FeedSnapshot)).all() == []


@pytest.mark.asyncio
async def test_sync_without_endpoints_is_a_noop(session):
    summary = await pipeline.sync(session, endpoints=[])
    assert summary.sources == []


@pytest.mark.asyncio
async def test_collect_then_inspect(session, feed):
    endpoints = [f"{BASE}/apartments.json", f"{BASE}/missing.json"]

    collected = await pipeline.collect(session, endpoints=endpoints, client=feed.client())
    inspected = pipeline.inspect(session, endpoints=endpoints, reset=True)

    assert collected["fetched"] == 1
    assert collected["failed"] == 1
    assert collected["changed"] == 1
    assert inspected["endpoints"][0]["status"] == "success"
    assert inspected["endpoints"][1]["status"] == "skipped"

    paths = {
        f.path
        for f in session.exec(select(SchemaFieldObservation)).all()
    }
    assert {"[]", "[]._id", "[].price", "[].plan", "[].plan[]"} <= paths


@pytest.mark.asyncio
async def test_collect_twice_detects_unchanged_feed(session, feed):
    endpoints = [f"{BASE}/apartments.json"]

    await pipeline.collect(session, endpoints=endpoints, client=feed.client())
    second = await pipeline.collect(session, endpoints=endpoints, client=feed.client())

    assert second["changed"] == 0
    assert second["endpoints"][0]["is_changed"] is False


@pytest.mark.asyncio
async def test_collect_inspects_body_when_payload_is_not_stored(session, feed, monkeypatch):
    monkeypatch.setattr(settings, "feed_save_payload", False)
    endpoints = [f"{BASE}/apartments.json"]

    collected = await pipeline.collect(session, endpoints=endpoints, client=feed.client())
    inspected = pipeline.inspect(session, endpoints=endpoints)

    assert session.exec(select(FeedSnapshot)).one().payload is None
    assert collected["endpoints"][0]["schema"]["paths"] > 0
    assert collected["endpoints"][0]["schema"]["entities"] == 1
    paths = {f.path for f in session.exec(select(SchemaFieldObservation)).all()}
    assert {"[]._id", "[].building_id", "[].plan[]"} <= paths
    assert inspected["endpoints"][0]["status"] == "skipped"
    assert "collect" in inspected["endpoints"][0]["reason"]


@pytest.mark.asyncio
async def test_sync_fails_when_no_feed_file_arrives(session, feed, clock):
    feed.missing.update(FILE_KEYS.values())

    with pytest.raises(FetchError):
        await pipeline.sync(session, endpoints=[f"{BASE}/apartments.json"], client=feed.client())

    assert session.exec(select(Apartment)).all() == []


@pytest.mark.asyncio
async def test_sync_with_some_files_missing_still_reports(session, feed, clock):
    feed.missing.update({"blocks", "buildings"})

    summary = await pipeline.sync(
        session, endpoints=[f"{BASE}/apartments.json"], client=feed.client()
    )

    source = summary.sources[0]
    assert set(source.fetch_errors) == {"blocks", "buildings"}
    assert source.downloaded["regions"] == 1

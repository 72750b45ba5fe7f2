import json

from sqlmodel import select

from estatefeed.feed.client import FetchResult
from estatefeed.feed.parsing import url_hash
from estatefeed.feed.snapshot_store import SnapshotStore, count_objects
from estatefeed.models.feed_models import FeedSnapshot

URL = "https://feed.example.com/export/apartments.json"


def fetched(body, url=URL) -> FetchResult:
    raw = body if isinstance(body, bytes) else json.dumps(body).encode()
    return FetchResult(url=url, label="test", body=raw, http_status=200, download_seconds=0.2)


def save(store, body, url=URL):
    result = fetched(body, url)
    return store.save(result, result.decoded())


def test_change_detection_by_checksum(session):
    store = SnapshotStore(session, keep_snapshots=0, save_payload=True, hints={})

    first = save(store, [{"_id": 1}])
    same = save(store, [{"_id": 1}])
    changed = save(store, [{"_id": 1}, {"_id": 2}])

    assert first.is_changed is True
    assert same.is_changed is False
    assert changed.is_changed is True
    assert first.checksum == same.checksum != changed.checksum


def test_snapshot_metadata(session):
    store = SnapshotStore(session, keep_snapshots=0, save_payload=True, hints={})

    snapshot = save(store, [{"_id": 1}, {"_id": 2}, {"_id": 3}])

    assert snapshot.source_url == URL
    assert snapshot.source_hash == url_hash(URL)
    assert snapshot.objects_count == 3
    assert snapshot.http_status == 200
    assert snapshot.payload_bytes == len(snapshot.payload.encode())
    assert json.loads(snapshot.payload) == [{"_id": 1}, {"_id": 2}, {"_id": 3}]


def test_metadata_only_mode(session):
    store = SnapshotStore(session, keep_snapshots=0, save_payload=False, hints={})

    snapshot = save(store, {"apartments": [1, 2]})

    assert snapshot.payload is None
    assert snapshot.checksum
    assert snapshot.apartments_count == 2
    assert store.latest_with_payload(URL) is None


def test_change_detection_is_per_endpoint(session):
    store = SnapshotStore(session, keep_snapshots=0, save_payload=True, hints={})
    save(store, [1])

    other = save(store, [1], url="https://feed.example.com/export/blocks.json")

    assert other.is_changed is True


def test_retention_keeps_newest(session):
    store = SnapshotStore(session, keep_snapshots=2, save_payload=True, hints={})
    for n in range(4):
        save(store, [n])

    rows = session.exec(select(FeedSnapshot).order_by(FeedSnapshot.id)).all()
    assert len(rows) == 2
    assert [json.loads(r.payload) for r in rows] == [[2], [3]]
    assert store.latest(URL).payload == "[3]"


def test_unlimited_retention(session):
    store = SnapshotStore(session, keep_snapshots=0, save_payload=True, hints={})
    for n in range(4):
        save(store, [n])

    assert len(store.history(URL, limit=10)) == 4


def test_history_newest_first(session):
    store = SnapshotStore(session, keep_snapshots=0, save_payload=True, hints={})
    first = save(store, [1])
    second = save(store, [2])

    assert [s.id for s in store.history(URL)] == [second.id, first.id]


def test_count_objects_with_hints():
    data = {"complexes_list": [1, 2], "corpus": [1], "lots": [1, 2, 3, 4]}
    hints = {"projects": "complexes_list", "buildings": "corpus", "apartments": "lots"}

    counts = count_objects(data, hints)

    assert counts == {"objects": 4, "projects": 2, "buildings": 1, "apartments": 4}


def test_count_objects_heuristic():
    data = {"blocks": [1, 2], "houses": [1, 2, 3], "flats": list(range(10)), "meta": {"v": 1}}

    counts = count_objects(data)

    assert counts["projects"] == 2
    assert counts["buildings"] == 3
    assert counts["apartments"] == 10
    assert counts["objects"] == 10


def test_count_objects_root_list_and_scalars():
    assert count_objects([1, 2, 3])["objects"] == 3
    assert count_objects("text") == {"objects": 0, "projects": 0, "buildings": 0, "apartments": 0}

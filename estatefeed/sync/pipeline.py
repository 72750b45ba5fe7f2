"""estatefeed — Feed Pipeline Orchestrator.

Runs the three feed jobs:
  collect → download every configured endpoint and store a raw snapshot
  inspect → infer the schema of each endpoint's latest stored payload
             (collect inspects the body itself when payloads are not stored)
  sync    → download the entity files of each feed source and reconcile them

Sync captures one `sync_at` per run and drives the engine in dependency
order; the stale pass for a source runs only if its apartments file arrived.
"""

import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlmodel import Session

from estatefeed.config import settings
from estatefeed.core.errors import FeedDecodeError, FetchError
from estatefeed.core.logging import get_logger
from estatefeed.feed.client import FeedClient
from estatefeed.feed.parsing import url_hash, utc_now
from estatefeed.feed.schema_inspector import SchemaInspector
from estatefeed.feed.schema_mapper import map_schema, root_name_for_url
from estatefeed.feed.schema_store import SchemaObservationStore
from estatefeed.feed.snapshot_store import SnapshotStore
from estatefeed.sync.engine import ReconciliationEngine
from estatefeed.sync.results import BatchReport

logger = get_logger("sync.pipeline")

# Dependency order: reference tables, then blocks → buildings → apartments
ENTITY_FILES = (
    ("regions", "regions.json"),
    ("subways", "subways.json"),
    ("builders", "builders.json"),
    ("finishings", "finishings.json"),
    ("building_types", "buildingtypes.json"),
    ("rooms", "rooms.json"),
    ("blocks", "blocks.json"),
    ("buildings", "buildings.json"),
    ("apartments", "apartments.json"),
)

WRAPPER_KEYS = ("data", "items", "results")

_JSON_FILE = re.compile(r"[^/]+\.json$")


def base_url(endpoint: str) -> str:
    """`https://host/feed/apartments.json` → `https://host/feed`."""
    return _JSON_FILE.sub("", endpoint.strip()).rstrip("/")


def feed_sources(endpoints: List[str]) -> List[str]:
    """Distinct base URLs of the configured endpoints, in order."""
    seen: List[str] = []
    for endpoint in endpoints:
        base = base_url(endpoint)
        if base and base not in seen:
            seen.append(base)
    return seen


def extract_records(decoded: Any) -> Optional[List[Any]]:
    """Entity files are root-level arrays; a few feeds wrap them in an object.

    Returns None for any other shape.
    """
    if isinstance(decoded, list):
        return decoded
    if isinstance(decoded, dict):
        for key in WRAPPER_KEYS:
            if isinstance(decoded.get(key), list):
                return decoded[key]
    return None


# ── Collect ──


async def collect(
    session: Session,
    endpoints: Optional[List[str]] = None,
    client: Optional[FeedClient] = None,
) -> Dict[str, Any]:
    """Download each endpoint and append a snapshot. Failures are per endpoint."""
    urls = endpoints if endpoints is not None else settings.endpoint_list
    if not urls:
        logger.warning("No feed endpoints configured; nothing to collect")

    store = SnapshotStore(session)
    schema_store = SchemaObservationStore(session)
    inspector = _schema_inspector()
    owns_client = client is None
    client = client or FeedClient()
    results: List[Dict[str, Any]] = []

    try:
        for url in urls:
            try:
                fetched = await client.fetch(url)
            except FetchError as e:
                logger.error(
                    f"Collect failed: {e}",
                    extra={"endpoint": url, "status_code": e.status_code},
                )
                results.append({"url": url, "status": "failed", "error": str(e)})
                continue

            try:
                decoded = fetched.decoded()
            except FeedDecodeError as e:
                logger.warning(str(e), extra={"endpoint": url})
                decoded = None

            snapshot = store.save(fetched, decoded)
            entry = {
                "url": url,
                "status": "success",
                "snapshot_id": snapshot.id,
                "is_changed": snapshot.is_changed,
                "size": fetched.human_size(),
                "objects": snapshot.objects_count,
                "valid_json": decoded is not None,
            }
            if decoded is not None and not store.save_payload:
                # Metadata-only snapshot: the body is inspected now or never
                entry["schema"] = _inspect_payload(
                    schema_store, inspector, url, decoded, settings.feed_schema_reset
                )
            results.append(entry)
    finally:
        if owns_client:
            await client.close()

    fetched_count = sum(1 for r in results if r["status"] == "success")
    summary = {
        "fetched": fetched_count,
        "failed": len(results) - fetched_count,
        "changed": sum(1 for r in results if r.get("is_changed")),
        "endpoints": results,
    }
    logger.info(
        f"Collect complete: {summary['fetched']} fetched, "
        f"{summary['failed']} failed, {summary['changed']} changed",
        extra={"job": "collect"},
    )
    return summary


# ── Inspect ──


def _schema_inspector() -> SchemaInspector:
    return SchemaInspector(
        max_depth=settings.feed_schema_max_depth,
        array_sample_size=settings.feed_schema_array_sample,
        example_max_length=settings.feed_schema_example_len,
        all_null_type=settings.feed_schema_all_null_type,
        enum_threshold=settings.feed_schema_enum_threshold,
    )


def _inspect_payload(
    schema_store: SchemaObservationStore,
    inspector: SchemaInspector,
    url: str,
    data: Any,
    reset: bool,
) -> Dict[str, Any]:
    """Infer and persist the schema of one decoded payload."""
    observations = inspector.inspect(data)
    written = schema_store.persist(url, observations, reset=reset)
    mapping = map_schema(
        schema_store.fields_for(url),
        enum_threshold=inspector.enum_threshold,
        root_name=root_name_for_url(url),
    )
    return {
        "paths": written,
        "capped": sum(1 for o in observations.values() if o.capped),
        "max_depth": max((o.depth for o in observations.values()), default=0),
        "entities": len(mapping.entities),
        "enum_candidates": len(mapping.enum_candidates),
    }


def inspect(
    session: Session,
    endpoints: Optional[List[str]] = None,
    reset: Optional[bool] = None,
) -> Dict[str, Any]:
    """Run the schema inspector over each endpoint's latest stored payload.

    When payloads are not persisted, collect has already inspected the body
    it downloaded; those endpoints are reported as skipped here.
    """
    urls = endpoints if endpoints is not None else settings.endpoint_list
    reset = settings.feed_schema_reset if reset is None else reset

    inspector = _schema_inspector()
    snapshots = SnapshotStore(session)
    schema_store = SchemaObservationStore(session)
    results: List[Dict[str, Any]] = []

    for url in urls:
        snapshot = snapshots.latest_with_payload(url)
        if snapshot is None:
            reason = "no payload"
            if snapshots.latest(url) is not None:
                reason = "payload not stored; inspected during collect"
            logger.warning(
                f"No stored payload to inspect ({reason})", extra={"endpoint": url}
            )
            results.append({"url": url, "status": "skipped", "reason": reason})
            continue

        try:
            data = json.loads(snapshot.payload)
        except json.JSONDecodeError as e:
            logger.warning(
                f"Snapshot {snapshot.id} is not valid JSON: {e}",
                extra={"endpoint": url},
            )
            results.append({"url": url, "status": "skipped", "reason": "invalid json"})
            continue

        outcome = _inspect_payload(schema_store, inspector, url, data, reset)
        results.append(
            {"url": url, "status": "success", "snapshot_id": snapshot.id, **outcome}
        )

    logger.info(
        f"Inspect complete for {len(urls)} endpoints (reset={reset})",
        extra={"job": "inspect"},
    )
    return {"reset": reset, "endpoints": results}


# ── Sync ──


@dataclass
class SourceSync:
    """Outcome of syncing one feed source (one base URL)."""

    base_url: str
    feed_source: str
    downloaded: Dict[str, int] = field(default_factory=dict)
    fetch_errors: Dict[str, str] = field(default_factory=dict)
    reports: List[BatchReport] = field(default_factory=list)
    stale_marked: Optional[int] = None  # None = stale pass skipped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_url": self.base_url,
            "feed_source": self.feed_source,
            "downloaded": self.downloaded,
            "fetch_errors": self.fetch_errors,
            "collections": [r.to_dict() for r in self.reports],
            "stale_marked": self.stale_marked,
        }


@dataclass
class SyncSummary:
    sync_at: datetime
    dry_run: bool = False
    sources: List[SourceSync] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def upserted(self) -> int:
        return sum(r.upserted for s in self.sources for r in s.reports)

    @property
    def failed_records(self) -> int:
        return sum(r.failed for s in self.sources for r in s.reports)

    @property
    def stale_marked(self) -> int:
        return sum(s.stale_marked or 0 for s in self.sources)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sync_at": self.sync_at.isoformat(),
            "dry_run": self.dry_run,
            "upserted": self.upserted,
            "failed_records": self.failed_records,
            "stale_marked": self.stale_marked,
            "duration_seconds": self.duration_seconds,
            "sources": [s.to_dict() for s in self.sources],
        }


def reconcile(
    engine: ReconciliationEngine,
    data: Dict[str, List[Any]],
    sync_at: datetime,
) -> List[BatchReport]:
    """Feed downloaded collections to the engine in dependency order."""
    reports = []
    for collection, _ in ENTITY_FILES:
        if collection not in data:
            continue
        records = data[collection]
        if collection == "apartments":
            reports.append(engine.upsert_apartments(records, sync_at))
        else:
            reports.append(getattr(engine, f"upsert_{collection}")(records))
    return reports


async def sync(
    session: Session,
    dry_run: bool = False,
    endpoints: Optional[List[str]] = None,
    client: Optional[FeedClient] = None,
    stale_threshold: Optional[timedelta] = None,
) -> SyncSummary:
    """Download and reconcile every feed source.

    Database errors propagate and abort the run; fetch failures only skip
    the affected file, unless no file of any source arrived, which raises
    FetchError.
    """
    started = time.monotonic()
    sync_at = utc_now()
    urls = endpoints if endpoints is not None else settings.endpoint_list
    threshold = (
        stale_threshold
        if stale_threshold is not None
        else timedelta(minutes=settings.feed_stale_threshold_minutes)
    )
    summary = SyncSummary(sync_at=sync_at, dry_run=dry_run)

    sources = feed_sources(urls)
    if not sources:
        logger.warning("No feed endpoints configured; nothing to sync")
        return summary

    logger.info(
        f"Sync starting for {len(sources)} sources (dry_run={dry_run})",
        extra={"job": "sync"},
    )
    snapshots = SnapshotStore(session)
    owns_client = client is None
    client = client or FeedClient()

    try:
        for base in sources:
            source = SourceSync(base_url=base, feed_source=url_hash(base))
            data: Dict[str, List[Any]] = {}

            for collection, filename in ENTITY_FILES:
                url = f"{base}/{filename}"
                try:
                    fetched = await client.fetch(url)
                    decoded = fetched.decoded()
                except (FetchError, FeedDecodeError) as e:
                    logger.warning(
                        f"Failed to download {collection}: {e}",
                        extra={"endpoint": url, "collection": collection},
                    )
                    source.fetch_errors[collection] = str(e)
                    continue

                if not dry_run:
                    snapshots.save(fetched, decoded)
                records = extract_records(decoded)
                if records is None:
                    logger.warning(
                        f"{collection} payload is not a list of records",
                        extra={"endpoint": url, "collection": collection},
                    )
                    source.fetch_errors[collection] = "unrecognized payload shape"
                    continue
                data[collection] = records
                source.downloaded[collection] = len(records)

            if not dry_run:
                engine = ReconciliationEngine(session, feed_source=source.feed_source)
                source.reports = reconcile(engine, data, sync_at)
                if "apartments" in data:
                    source.stale_marked = engine.mark_stale_apartments(
                        sync_at, threshold
                    )
                else:
                    logger.warning(
                        "Apartments file missing; stale pass skipped for this source",
                        extra={"source_url": base},
                    )

            summary.sources.append(source)
    finally:
        if owns_client:
            await client.close()

    if not any(s.downloaded for s in summary.sources):
        attempted = sum(len(s.fetch_errors) for s in summary.sources)
        logger.error(
            f"Sync aborted: none of {attempted} feed files could be used",
            extra={"job": "sync"},
        )
        raise FetchError(
            f"No feed file could be downloaded from {len(sources)} sources"
        )

    summary.duration_seconds = round(time.monotonic() - started, 2)
    logger.info(
        f"Sync complete: upserted={summary.upserted} "
        f"failed={summary.failed_records} stale={summary.stale_marked} "
        f"in {summary.duration_seconds}s",
        extra={"job": "sync", "duration_ms": int(summary.duration_seconds * 1000)},
    )
    return summary

"""estatefeed — Feed Pipeline API Routes.

Manual triggers for collect / inspect / sync plus read access to stored
snapshots and inferred schema. Triggers share the scheduler's job guard, so
a manual run while the same job is active returns 409.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlmodel import Session

from estatefeed.config import settings
from estatefeed.core.errors import FetchError
from estatefeed.core.logging import get_logger
from estatefeed.database import get_session
from estatefeed.feed.schema_mapper import map_schema, root_name_for_url
from estatefeed.feed.schema_store import SchemaObservationStore
from estatefeed.feed.snapshot_store import SnapshotStore
from estatefeed.scheduler.guard import JobAlreadyRunning
from estatefeed.scheduler.jobs import run_collect, run_inspect, run_sync

logger = get_logger("api.feed")

router = APIRouter(prefix="/feed", tags=["Feed"])


# ── Request Models ──


class CollectRequest(BaseModel):
    endpoints: Optional[List[str]] = None
    """Override the configured endpoint list."""


class InspectRequest(BaseModel):
    endpoints: Optional[List[str]] = None
    reset: Optional[bool] = None
    """Replace stored observations instead of accumulating. Defaults to config."""


class SyncRequest(BaseModel):
    dry_run: bool = False
    """Download and count records without writing anything."""
    endpoints: Optional[List[str]] = None

    model_config = {"json_schema_extra": {"examples": [{"dry_run": True}]}}


# ── Triggers ──


@router.post("/collect")
async def trigger_collect(
    request: CollectRequest = CollectRequest(),
    session: Session = Depends(get_session),
):
    """Download every endpoint and store a raw snapshot."""
    try:
        result = await run_collect(session, endpoints=request.endpoints)
    except JobAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": "success", **result}


@router.post("/inspect")
async def trigger_inspect(
    request: InspectRequest = InspectRequest(),
    session: Session = Depends(get_session),
):
    """Infer the schema of each endpoint's latest stored payload."""
    try:
        result = await run_inspect(
            session, endpoints=request.endpoints, reset=request.reset
        )
    except JobAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": "success", **result}


@router.post("/sync")
async def trigger_sync(
    request: SyncRequest = SyncRequest(),
    session: Session = Depends(get_session),
):
    """Reconcile the feed into the catalog tables."""
    try:
        summary = await run_sync(
            session, dry_run=request.dry_run, endpoints=request.endpoints
        )
    except JobAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    except FetchError as e:
        raise HTTPException(status_code=502, detail=f"Feed fetch failed: {e}")
    except Exception as e:
        logger.error(f"Sync failed: {e}", exc_info=True, extra={"job": "sync"})
        raise HTTPException(status_code=500, detail=f"Sync failed: {str(e)}")
    return {"status": "success", "summary": summary.to_dict()}


# ── Read ──


@router.get("/snapshots")
async def list_snapshots(
    url: Optional[str] = Query(None, description="Only snapshots of this endpoint"),
    limit: int = Query(20, ge=1, le=100),
    session: Session = Depends(get_session),
):
    """Snapshot history, newest first. Payloads are not included."""
    snapshots = SnapshotStore(session).history(url, limit=limit)
    return {
        "status": "success",
        "count": len(snapshots),
        "snapshots": [
            {
                "id": s.id,
                "source_url": s.source_url,
                "source_label": s.source_label,
                "checksum": s.checksum,
                "payload_bytes": s.payload_bytes,
                "has_payload": s.payload is not None,
                "objects_count": s.objects_count,
                "projects_count": s.projects_count,
                "buildings_count": s.buildings_count,
                "apartments_count": s.apartments_count,
                "http_status": s.http_status,
                "download_seconds": s.download_seconds,
                "is_changed": s.is_changed,
                "created_at": s.created_at.isoformat(),
            }
            for s in snapshots
        ],
    }


@router.get("/schema")
async def get_schema(
    url: str = Query(..., description="Endpoint URL"),
    session: Session = Depends(get_session),
):
    """Stored schema observations of one endpoint, plus the entities,
    enum candidates and entity relationships they imply.
    """
    fields = SchemaObservationStore(session).fields_for(url)
    if not fields:
        raise HTTPException(status_code=404, detail=f"No schema recorded for {url}")
    mapping = map_schema(
        fields,
        enum_threshold=settings.feed_schema_enum_threshold,
        root_name=root_name_for_url(url),
    )
    return {
        "status": "success",
        "url": url,
        "count": len(fields),
        **mapping.to_dict(),
        "fields": [
            {
                "path": f.path,
                "type": f.type,
                "occurrences": f.occurrences,
                "null_count": f.null_count,
                "example_value": f.example_value,
                "depth": f.depth,
                "is_always_present": f.is_always_present,
                "is_capped": f.is_capped,
            }
            for f in fields
        ],
    }

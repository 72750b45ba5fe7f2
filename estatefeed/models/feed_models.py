"""estatefeed — Feed Audit Models (Immutable Snapshots, Schema Observations, Job Locks)."""

from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy import JSON, Column, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FeedSnapshot(SQLModel, table=True):
    """One raw download of a feed endpoint.

    Append-only: rows are written once and only ever removed by retention
    pruning. The checksum is compared with the previous row of the same
    source to decide `is_changed`.
    """

    __tablename__ = "feed_snapshots"
    __table_args__ = (
        Index("idx_feed_snapshots_source_created", "source_hash", "created_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    source_url: str = Field(sa_column=Column(Text, nullable=False))
    source_hash: str = Field(index=True, max_length=32, description="MD5(source_url)")
    source_label: Optional[str] = Field(default=None, max_length=255)
    payload: Optional[str] = Field(
        default=None,
        sa_column=Column(Text),
        description="Raw JSON body; NULL in metadata-only mode",
    )
    checksum: str = Field(index=True, max_length=40, description="SHA-1 of raw payload")
    payload_bytes: int = Field(default=0)
    objects_count: int = Field(default=0)
    projects_count: int = Field(default=0)
    buildings_count: int = Field(default=0)
    apartments_count: int = Field(default=0)
    http_status: Optional[int] = None
    download_seconds: Optional[float] = None
    is_changed: bool = Field(default=True)
    created_at: datetime = Field(default_factory=_utcnow, index=True)


class SchemaFieldObservation(SQLModel, table=True):
    """Observed shape of one JSON path of one feed endpoint.

    Unique on (source_hash, path): re-running analysis without a reset
    folds new counts into the existing row.
    """

    __tablename__ = "feed_schema_fields"
    __table_args__ = (
        UniqueConstraint("source_hash", "path", name="uq_feed_schema_source_path"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    source_url: str = Field(sa_column=Column(Text, nullable=False))
    source_hash: str = Field(index=True, max_length=32)
    path: str = Field(max_length=1024, description="e.g. projects[].buildings[].area")
    type: str = Field(index=True, max_length=20)
    occurrences: int = Field(default=0)
    null_count: int = Field(default=0)
    example_value: Optional[str] = Field(default=None, max_length=255)
    depth: int = Field(default=0, index=True)
    is_always_present: bool = Field(default=False)
    is_capped: bool = Field(default=False, description="Recursion stopped at max depth")
    distinct_values: Optional[Dict[str, int]] = Field(
        default=None,
        sa_column=Column(JSON),
        description="Scalar value counts, kept until the path exceeds the enum threshold",
    )
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class JobLock(SQLModel, table=True):
    """Lease on a named feed job, shared by every process using the database.

    A row exists per job name once the job has run; `holder` is NULL while
    the job is idle. A lease whose `expires_at` has passed may be taken over.
    """

    __tablename__ = "job_locks"

    name: str = Field(primary_key=True, max_length=50)
    holder: Optional[str] = Field(default=None, max_length=255)
    acquired_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

"""estatefeed — Raw Snapshot Store.

Every download becomes one immutable `feed_snapshots` row. The SHA-1 of the
raw body is compared with the previous row of the same endpoint to flag
whether the feed changed; older rows beyond the retention limit are pruned.
"""

from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete
from sqlmodel import Session, select

from estatefeed.config import settings
from estatefeed.core.logging import get_logger
from estatefeed.feed.client import FetchResult
from estatefeed.feed.parsing import url_hash
from estatefeed.models.feed_models import FeedSnapshot

logger = get_logger("feed.snapshot_store")

# Root-key fragments used when no structural hint is configured
KEY_PATTERNS: Dict[str, Sequence[str]] = {
    "projects": ("project", "complex", "block", "zhk", "жк"),
    "buildings": ("building", "house", "korpus", "корпус"),
    "apartments": ("apartment", "flat", "unit", "квартир", "object"),
}


def count_objects(data: Any, hints: Optional[Dict[str, str]] = None) -> Dict[str, int]:
    """Best-effort object counts at the root of a decoded payload.

    Configured hint keys win; otherwise root keys holding lists are matched
    against known name fragments. `objects` is the largest root list, or the
    length of the payload itself when the root is a list.
    """
    counts = {"objects": 0, "projects": 0, "buildings": 0, "apartments": 0}

    if isinstance(data, list):
        counts["objects"] = len(data)
        return counts
    if not isinstance(data, dict):
        return counts

    for category, key in (hints or {}).items():
        if key and isinstance(data.get(key), (list, dict)):
            counts[category] = len(data[key])

    for key, value in data.items():
        if not isinstance(value, list):
            continue
        size = len(value)
        key_lower = str(key).lower()
        for category, patterns in KEY_PATTERNS.items():
            if counts[category] == 0 and any(p in key_lower for p in patterns):
                counts[category] = size
                break
        counts["objects"] = max(counts["objects"], size)

    return counts


class SnapshotStore:
    """Append-only persistence of raw feed downloads."""

    def __init__(
        self,
        session: Session,
        keep_snapshots: Optional[int] = None,
        save_payload: Optional[bool] = None,
        hints: Optional[Dict[str, str]] = None,
    ):
        self.session = session
        self.keep_snapshots = (
            keep_snapshots if keep_snapshots is not None else settings.feed_keep_snapshots
        )
        self.save_payload = (
            save_payload if save_payload is not None else settings.feed_save_payload
        )
        self.hints = hints if hints is not None else settings.structural_hints

    def save(self, result: FetchResult, decoded: Any = None) -> FeedSnapshot:
        """Persist one download and return the new row."""
        checksum = result.checksum()
        latest = self.latest(result.url)
        is_changed = latest is None or latest.checksum != checksum
        counts = count_objects(decoded, self.hints) if decoded is not None else {}

        snapshot = FeedSnapshot(
            source_url=result.url,
            source_hash=url_hash(result.url),
            source_label=result.label,
            payload=(
                result.body.decode("utf-8", errors="replace")
                if self.save_payload
                else None
            ),
            checksum=checksum,
            payload_bytes=result.size_bytes,
            objects_count=counts.get("objects", 0),
            projects_count=counts.get("projects", 0),
            buildings_count=counts.get("buildings", 0),
            apartments_count=counts.get("apartments", 0),
            http_status=result.http_status,
            download_seconds=result.download_seconds,
            is_changed=is_changed,
        )
        self.session.add(snapshot)
        self.session.commit()
        self.session.refresh(snapshot)

        logger.info(
            f"Snapshot {snapshot.id} saved ({result.human_size()}, "
            f"changed={is_changed}, objects={snapshot.objects_count})",
            extra={"source_url": result.url},
        )

        self.prune(result.url)
        return snapshot

    def latest(self, url: str) -> Optional[FeedSnapshot]:
        """Most recent snapshot of `url`, or None."""
        return self.session.exec(
            select(FeedSnapshot)
            .where(FeedSnapshot.source_hash == url_hash(url))
            .order_by(FeedSnapshot.created_at.desc(), FeedSnapshot.id.desc())  # type: ignore
            .limit(1)
        ).first()

    def latest_with_payload(self, url: str) -> Optional[FeedSnapshot]:
        return self.session.exec(
            select(FeedSnapshot)
            .where(
                FeedSnapshot.source_hash == url_hash(url),
                FeedSnapshot.payload.is_not(None),  # type: ignore
            )
            .order_by(FeedSnapshot.created_at.desc(), FeedSnapshot.id.desc())  # type: ignore
            .limit(1)
        ).first()

    def history(self, url: Optional[str] = None, limit: int = 20) -> List[FeedSnapshot]:
        query = select(FeedSnapshot).order_by(
            FeedSnapshot.created_at.desc(), FeedSnapshot.id.desc()  # type: ignore
        )
        if url:
            query = query.where(FeedSnapshot.source_hash == url_hash(url))
        return list(self.session.exec(query.limit(limit)).all())

    def prune(self, url: str) -> int:
        """Drop rows of `url` older than the newest `keep_snapshots`."""
        if self.keep_snapshots <= 0:
            return 0

        source_hash = url_hash(url)
        keep_ids = self.session.exec(
            select(FeedSnapshot.id)
            .where(FeedSnapshot.source_hash == source_hash)
            .order_by(FeedSnapshot.created_at.desc(), FeedSnapshot.id.desc())  # type: ignore
            .limit(self.keep_snapshots)
        ).all()
        if len(keep_ids) < self.keep_snapshots:
            return 0

        result = self.session.execute(
            delete(FeedSnapshot).where(
                FeedSnapshot.source_hash == source_hash,
                FeedSnapshot.id.not_in(keep_ids),  # type: ignore
            )
        )
        self.session.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info(
                f"Pruned {deleted} old snapshots", extra={"source_url": url}
            )
        return deleted

"""estatefeed — Schema observation persistence.

Writes inspector output into `feed_schema_fields`. In reset mode the
endpoint's rows are replaced; otherwise new counts are folded into the
existing (source, path) rows so repeated runs never insert duplicates.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import delete
from sqlmodel import Session, select

from estatefeed.config import settings
from estatefeed.core.logging import get_logger
from estatefeed.feed.parsing import url_hash
from estatefeed.feed.schema_inspector import (
    FieldObservation,
    MIXED,
    merge_types,
)
from estatefeed.models.feed_models import SchemaFieldObservation

logger = get_logger("feed.schema_store")

EXAMPLE_COLUMN_LENGTH = 255


class SchemaObservationStore:
    """Persist and read back schema observations per endpoint."""

    def __init__(self, session: Session, enum_threshold: Optional[int] = None):
        self.session = session
        self.enum_threshold = (
            enum_threshold
            if enum_threshold is not None
            else settings.feed_schema_enum_threshold
        )

    def persist(
        self,
        source_url: str,
        observations: Dict[str, FieldObservation],
        reset: bool = False,
    ) -> int:
        """Write observations for `source_url`; returns paths written."""
        source_hash = url_hash(source_url)
        now = datetime.now(timezone.utc)

        if reset:
            self.session.execute(
                delete(SchemaFieldObservation).where(
                    SchemaFieldObservation.source_hash == source_hash
                )
            )
            existing: Dict[str, SchemaFieldObservation] = {}
        else:
            rows = self.session.exec(
                select(SchemaFieldObservation).where(
                    SchemaFieldObservation.source_hash == source_hash
                )
            ).all()
            existing = {row.path: row for row in rows}

        for path, obs in observations.items():
            row = existing.get(path)
            if row is None:
                self.session.add(
                    SchemaFieldObservation(
                        source_url=source_url,
                        source_hash=source_hash,
                        path=path,
                        type=obs.type,
                        occurrences=obs.occurrences,
                        null_count=obs.null_count,
                        example_value=_cap(obs.example_value),
                        depth=obs.depth,
                        is_always_present=obs.is_always_present,
                        is_capped=obs.capped,
                        distinct_values=self._distinct(obs.distinct_values),
                        created_at=now,
                        updated_at=now,
                    )
                )
                continue

            row.type = _merge_persisted_type(row, obs)
            row.occurrences += obs.occurrences
            row.null_count += obs.null_count
            if row.example_value is None:
                row.example_value = _cap(obs.example_value)
            row.is_always_present = row.is_always_present and obs.is_always_present
            row.is_capped = row.is_capped or obs.capped
            row.distinct_values = self._distinct(
                row.distinct_values or {}, obs.distinct_values
            )
            row.updated_at = now
            self.session.add(row)

        self.session.commit()
        logger.info(
            f"Persisted {len(observations)} schema paths "
            f"({'reset' if reset else 'accumulate'})",
            extra={"source_url": source_url},
        )
        return len(observations)

    def _distinct(self, *counts: Dict[str, int]) -> Optional[Dict[str, int]]:
        """Sum value counts, keeping at most `enum_threshold + 1` most frequent values.

        One value past the threshold is enough to rule a path out as an enum.
        """
        merged: Dict[str, int] = {}
        for part in counts:
            for value, count in part.items():
                merged[value] = merged.get(value, 0) + count
        if not merged:
            return None
        top = sorted(merged.items(), key=lambda kv: (-kv[1], kv[0]))
        return dict(top[: self.enum_threshold + 1])

    def fields_for(self, source_url: str) -> List[SchemaFieldObservation]:
        """All observations of an endpoint, shallowest paths first."""
        return list(
            self.session.exec(
                select(SchemaFieldObservation)
                .where(SchemaFieldObservation.source_hash == url_hash(source_url))
                .order_by(SchemaFieldObservation.depth, SchemaFieldObservation.path)
            ).all()
        )


def _merge_persisted_type(row: SchemaFieldObservation, obs: FieldObservation) -> str:
    """Merge the stored type with a fresh observation's type.

    A side that only ever saw nulls contributes nothing; capped paths stay mixed.
    """
    if row.is_capped or obs.capped:
        return MIXED
    stored_all_null = row.occurrences == row.null_count
    new_all_null = obs.occurrences == obs.null_count
    if new_all_null:
        return row.type
    if stored_all_null:
        return obs.type
    return merge_types(row.type, obs.type)


def _cap(value):
    if value is None:
        return None
    return value[:EXAMPLE_COLUMN_LENGTH]

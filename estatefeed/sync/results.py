"""estatefeed — Per-record results and batch reports for the sync engine."""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from estatefeed.core.errors import RecordErrorKind

MAX_FAILURE_SAMPLES = 20


@dataclass(frozen=True)
class RecordResult:
    """Outcome of reconciling one feed record."""

    ok: bool
    record_id: Optional[Any] = None
    created: bool = False
    error: Optional[RecordErrorKind] = None
    message: str = ""

    @classmethod
    def inserted(cls, record_id: Any) -> "RecordResult":
        return cls(ok=True, record_id=record_id, created=True)

    @classmethod
    def updated(cls, record_id: Any) -> "RecordResult":
        return cls(ok=True, record_id=record_id, created=False)

    @classmethod
    def failed(
        cls, kind: RecordErrorKind, message: str, record_id: Any = None
    ) -> "RecordResult":
        return cls(ok=False, record_id=record_id, error=kind, message=message)


@dataclass
class BatchReport:
    """Aggregated outcome of one upsert call over a collection."""

    collection: str
    received: int = 0
    inserted: int = 0
    updated: int = 0
    errors: Counter = field(default_factory=Counter)
    warnings: Counter = field(default_factory=Counter)
    failures: List[RecordResult] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return sum(self.errors.values())

    @property
    def upserted(self) -> int:
        return self.inserted + self.updated

    def add(self, result: RecordResult) -> None:
        self.received += 1
        if result.ok:
            if result.created:
                self.inserted += 1
            else:
                self.updated += 1
            return
        self.errors[result.error.value] += 1
        if len(self.failures) < MAX_FAILURE_SAMPLES:
            self.failures.append(result)

    def warn(self, kind: str) -> None:
        self.warnings[kind] += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "received": self.received,
            "inserted": self.inserted,
            "updated": self.updated,
            "failed": self.failed,
            "errors": dict(self.errors),
            "warnings": dict(self.warnings),
            "failure_samples": [
                {
                    "record_id": f.record_id,
                    "error": f.error.value if f.error else None,
                    "message": f.message,
                }
                for f in self.failures
            ],
        }

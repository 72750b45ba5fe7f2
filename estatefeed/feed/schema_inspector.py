"""estatefeed — Recursive JSON Schema Inspector.

Walks a decoded feed payload and builds a field map keyed by path:

    projects                    array   depth=1
    projects[]                  object  depth=2
    projects[].id               int     depth=3
    projects[].building.floors  int     depth=4

Arrays are sampled (first `array_sample_size` items) so a feed with tens of
thousands of apartments costs the same as one with five. Pure: no I/O, the
caller decides what to do with the result.
"""

from dataclasses import dataclass, field
from itertools import islice
from typing import Any, Dict, Optional

ROOT_PATH = ""
SCALAR_ROOT_PATH = "$"
ARRAY_SUFFIX = "[]"
MIXED = "mixed"
NULL = "null"
DISTINCT_VALUE_LENGTH = 100


@dataclass
class FieldObservation:
    """Accumulated facts about one JSON path."""

    path: str
    type: str
    occurrences: int = 0
    null_count: int = 0
    example_value: Optional[str] = None
    depth: int = 0
    is_always_present: bool = False
    capped: bool = False
    distinct_values: Dict[str, int] = field(default_factory=dict)


def detect_type(value: Any) -> str:
    """JSON type label: string | int | float | bool | null | object | array."""
    if value is None:
        return NULL
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "float"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    return MIXED


def merge_types(current: str, observed: str) -> str:
    """Fold a newly observed type into the running type of a path."""
    if observed == NULL or current == observed or current == MIXED:
        return current
    if current == NULL:
        return observed
    return MIXED


def parent_path(path: str) -> str:
    """`a[].b` → `a[]`, `a[]` → `a`, `a.b` → `a`, `a` → root."""
    if path.endswith(ARRAY_SUFFIX):
        return path[: -len(ARRAY_SUFFIX)]
    dot = path.rfind(".")
    return path[:dot] if dot >= 0 else ROOT_PATH


class SchemaInspector:
    """Infer a path → observation map from an arbitrary JSON value."""

    def __init__(
        self,
        max_depth: int = 10,
        array_sample_size: int = 5,
        example_max_length: int = 200,
        all_null_type: str = NULL,
        enum_threshold: int = 20,
    ):
        if max_depth < 1:
            raise ValueError("max_depth must be >= 1")
        if array_sample_size < 1:
            raise ValueError("array_sample_size must be >= 1")
        self.max_depth = max_depth
        self.array_sample_size = array_sample_size
        self.example_max_length = example_max_length
        self.all_null_type = all_null_type
        self.enum_threshold = enum_threshold
        self._fields: Dict[str, FieldObservation] = {}

    def inspect(self, payload: Any) -> Dict[str, FieldObservation]:
        """Return the field map for `payload`. Safe to call repeatedly."""
        self._fields = {}

        if isinstance(payload, dict):
            self._walk_object(payload, ROOT_PATH, 0)
        elif isinstance(payload, (list, tuple)):
            self._walk_array(payload, ROOT_PATH, 0)
        else:
            self._record(SCALAR_ROOT_PATH, payload, 0)

        self._finalize()
        return self._fields

    # ── Traversal ──

    def _visit(self, value: Any, path: str, depth: int) -> None:
        """Record `value` at `path` and descend into containers."""
        is_container = isinstance(value, (dict, list, tuple))
        if is_container and depth >= self.max_depth:
            self._record_capped(path, depth)
            return

        self._record(path, value, depth)
        if isinstance(value, dict):
            self._walk_object(value, path, depth)
        elif isinstance(value, (list, tuple)):
            self._walk_array(value, path, depth)

    def _walk_object(self, obj: dict, path: str, depth: int) -> None:
        for key, child in obj.items():
            child_path = f"{path}.{key}" if path else str(key)
            self._visit(child, child_path, depth + 1)

    def _walk_array(self, items, path: str, depth: int) -> None:
        item_path = f"{path}{ARRAY_SUFFIX}"
        for item in islice(items, self.array_sample_size):
            self._visit(item, item_path, depth + 1)

    # ── Recording ──

    def _entry(self, path: str, depth: int) -> FieldObservation:
        entry = self._fields.get(path)
        if entry is None:
            entry = FieldObservation(path=path, type=NULL, depth=depth)
            self._fields[path] = entry
        return entry

    def _record(self, path: str, value: Any, depth: int) -> None:
        entry = self._entry(path, depth)
        entry.occurrences += 1
        observed = detect_type(value)
        if observed == NULL:
            entry.null_count += 1
        elif not entry.capped:
            entry.type = merge_types(entry.type, observed)

        if observed in (NULL, "object", "array"):
            return
        text = _scalar_text(value)
        if entry.example_value is None:
            entry.example_value = text[: self.example_max_length]
        self._count_distinct(entry, text)

    def _record_capped(self, path: str, depth: int) -> None:
        entry = self._entry(path, depth)
        entry.occurrences += 1
        entry.type = MIXED
        entry.capped = True

    def _count_distinct(self, entry: FieldObservation, text: str) -> None:
        """Count scalar values until the path has more than `enum_threshold` of them."""
        key = text[:DISTINCT_VALUE_LENGTH]
        seen = entry.distinct_values
        if key in seen or len(seen) <= self.enum_threshold:
            seen[key] = seen.get(key, 0) + 1

    def _finalize(self) -> None:
        for path, entry in self._fields.items():
            if entry.occurrences == entry.null_count and not entry.capped:
                entry.type = self.all_null_type
            if path.endswith(ARRAY_SUFFIX):
                # Element paths are relative to their array, not to a parent object
                entry.is_always_present = True
                continue
            parent = parent_path(path)
            parent_occurrences = (
                self._fields[parent].occurrences if parent in self._fields else 1
            )
            entry.is_always_present = entry.occurrences == parent_occurrences


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)

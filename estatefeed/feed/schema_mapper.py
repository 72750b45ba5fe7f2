"""estatefeed — Schema Mapper & Relationship Graph.

Reads a path → observation map (fresh inspector output or persisted
`feed_schema_fields` rows) and derives what the feed's shape implies:

    entities         element paths of arrays of objects: blocks[], [].subway[]
    id_fields        paths whose last segment looks like an identifier
    enum_candidates  non-id scalar paths with a small closed set of values
    relationships    nesting between entities plus `*_id` references

Entity names come from the path ("projects[].buildings[]" → buildings); a
root-level array takes the caller's `root_name`, usually the endpoint's
file name. Pure: no I/O.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from estatefeed.feed.schema_inspector import ARRAY_SUFFIX

ROOT_ENTITY = ARRAY_SUFFIX
DEFAULT_ROOT_NAME = "items"
NUMERIC_ENUM_LIMIT = 10

NESTING = "nesting"
FOREIGN_KEY = "foreign_key"
MANY_TO_ONE = "many_to_one"
ONE_TO_MANY = "one_to_many"
UNRESOLVED_FK = "unresolved_fk"

_SEGMENT_SPLIT = re.compile(r"[.\[\]]+")
_ENTITY_NAME = re.compile(r"([A-Za-z_][A-Za-z0-9_]*)\[\]")
_FK_SUFFIX = re.compile(r"(_id|Id)$")
_CAMEL = re.compile(r"([a-z])([A-Z])")


@dataclass
class ForeignKey:
    field: str
    name: str
    target_hint: str


@dataclass
class Entity:
    """An array of objects in the feed: a table in waiting."""

    path: str
    name: str
    table_name: str
    sampled_items: int
    id_field: Optional[str]
    parent: Optional[str]
    fields: List[str] = field(default_factory=list)
    foreign_keys: List[ForeignKey] = field(default_factory=list)
    children: List[str] = field(default_factory=list)

    @property
    def depth(self) -> int:
        return self.path.count(ARRAY_SUFFIX)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "name": self.name,
            "table_name": self.table_name,
            "sampled_items": self.sampled_items,
            "id_field": self.id_field,
            "parent": self.parent,
            "children": self.children,
            "depth": self.depth,
            "fields": self.fields,
            "foreign_keys": [
                {"field": fk.field, "name": fk.name, "target_hint": fk.target_hint}
                for fk in self.foreign_keys
            ],
        }


@dataclass
class Relationship:
    source: str
    target: Optional[str]
    kind: str
    via: str
    confidence: float
    field: Optional[str] = None
    target_hint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "from": self.source,
            "to": self.target,
            "type": self.kind,
            "via": self.via,
            "confidence": self.confidence,
        }
        if self.field is not None:
            data["field"] = self.field
        if self.target_hint is not None:
            data["target_hint"] = self.target_hint
        return data


@dataclass
class SchemaMap:
    entities: Dict[str, Entity]
    id_fields: List[str]
    enum_candidates: Dict[str, Dict[str, int]]
    relationships: List[Relationship]
    suggested_order: List[Dict[str, Any]]

    def hierarchy(self) -> Optional[Dict[str, Any]]:
        """Entity tree from the roots down; several roots come back as a forest."""
        roots = [e for e in self.entities.values() if e.parent is None]
        if not roots:
            return None

        def node(entity: Entity) -> Dict[str, Any]:
            return {
                "path": entity.path,
                "name": entity.name,
                "table_name": entity.table_name,
                "children": [
                    node(self.entities[c]) for c in entity.children if c in self.entities
                ],
            }

        if len(roots) == 1:
            return node(roots[0])
        return {"type": "forest", "roots": [node(r) for r in roots]}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entities": [e.to_dict() for e in self.entities.values()],
            "id_fields": self.id_fields,
            "enum_candidates": self.enum_candidates,
            "relationships": [r.to_dict() for r in self.relationships],
            "hierarchy": self.hierarchy(),
            "suggested_order": self.suggested_order,
        }


# ── Field heuristics ──


def is_id_field(path: str) -> bool:
    """`id`, `*_id` and camelCase `*Id` final segments; `a[]` never is."""
    last = _SEGMENT_SPLIT.split(path)[-1]
    if not last:
        return False
    lower = last.lower()
    return lower == "id" or lower.endswith("_id") or (last.endswith("Id") and last != "Id")


def enum_values(
    type_: str, distinct: Optional[Dict[str, int]], threshold: int
) -> Optional[Dict[str, int]]:
    """Value counts, most frequent first, when a path looks like an enum."""
    if not distinct or len(distinct) < 2 or len(distinct) > threshold:
        return None
    if type_ in ("int", "float") and len(distinct) > NUMERIC_ENUM_LIMIT:
        return None
    return dict(sorted(distinct.items(), key=lambda kv: (-kv[1], kv[0])))


# ── Naming ──


def entity_name(path: str, root_name: str = DEFAULT_ROOT_NAME) -> str:
    if path == ROOT_ENTITY:
        return root_name
    names = _ENTITY_NAME.findall(path)
    return names[-1] if names else path


def root_name_for_url(url: str) -> str:
    """`https://host/export/apartments.json` → `apartments`."""
    stem = urlsplit(url).path.rstrip("/").rsplit("/", 1)[-1]
    stem = stem.rsplit(".", 1)[0]
    return stem or DEFAULT_ROOT_NAME


def table_name(name: str) -> str:
    return _CAMEL.sub(r"\1_\2", name).lower()


def singular(word: str) -> str:
    if word.endswith("ies"):
        return word[:-3] + "y"
    if word.endswith(("ses", "xes", "zes")):
        return word[:-2]
    if word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def plural(word: str) -> str:
    if word.endswith("y"):
        return word[:-1] + "ies"
    if word.endswith("s"):
        return word
    return word + "s"


def _enclosing_entity(path: str) -> Optional[str]:
    """`a[].b[]` → `a[]`; `a[]` and the root array have none."""
    head = path[: -len(ARRAY_SUFFIX)]
    pos = head.rfind(ARRAY_SUFFIX)
    return head[: pos + len(ARRAY_SUFFIX)] if pos >= 0 else None


# ── Mapping ──


def map_schema(
    observations: Iterable[Any],
    enum_threshold: int = 20,
    root_name: str = DEFAULT_ROOT_NAME,
) -> SchemaMap:
    """Derive entities, id fields, enums and relationships from observations.

    `observations` may be `FieldObservation`s or `SchemaFieldObservation`
    rows; only `path`, `type`, `occurrences` and `distinct_values` are read.
    """
    by_path = {o.path: o for o in observations}

    id_fields = sorted(p for p in by_path if is_id_field(p))
    enum_candidates = {}
    for path in sorted(by_path):
        if is_id_field(path):
            continue
        obs = by_path[path]
        values = enum_values(obs.type, obs.distinct_values, enum_threshold)
        if values:
            enum_candidates[path] = values

    entities: Dict[str, Entity] = {}
    for path in sorted(by_path, key=lambda p: (p.count(ARRAY_SUFFIX), p)):
        obs = by_path[path]
        if not path.endswith(ARRAY_SUFFIX) or obs.type != "object":
            continue
        name = entity_name(path, root_name)
        direct = _direct_fields(path, by_path)
        entities[path] = Entity(
            path=path,
            name=name,
            table_name=table_name(name),
            sampled_items=obs.occurrences,
            id_field=_entity_id_field(path, direct),
            parent=None,
            fields=direct,
            foreign_keys=_foreign_keys(path, direct),
        )

    for entity in entities.values():
        parent = _enclosing_entity(entity.path)
        while parent is not None and parent not in entities:
            parent = _enclosing_entity(parent)
        entity.parent = parent

    relationships = _relationships(entities)
    for rel in relationships:
        if rel.via == NESTING and rel.kind == ONE_TO_MANY:
            children = entities[rel.source].children
            if rel.target not in children:
                children.append(rel.target)

    return SchemaMap(
        entities=entities,
        id_fields=id_fields,
        enum_candidates=enum_candidates,
        relationships=relationships,
        suggested_order=_creation_order(entities, relationships),
    )


def _direct_fields(entity_path: str, by_path: Dict[str, Any]) -> List[str]:
    prefix = entity_path + "."
    return sorted(
        p
        for p in by_path
        if p.startswith(prefix) and not any(c in p[len(prefix):] for c in ".[")
    )


def _entity_id_field(entity_path: str, direct: List[str]) -> Optional[str]:
    prefix = entity_path + "."
    for name in ("id", "_id"):
        if prefix + name in direct:
            return prefix + name
    return next((p for p in direct if p.endswith("_id")), None)


def _foreign_keys(entity_path: str, direct: List[str]) -> List[ForeignKey]:
    prefix = entity_path + "."
    keys = []
    for path in direct:
        name = path[len(prefix):]
        if name in ("id", "_id") or not _FK_SUFFIX.search(name):
            continue
        hint = _FK_SUFFIX.sub("", name)
        if hint:
            keys.append(ForeignKey(field=path, name=name, target_hint=hint))
    return keys


def _relationships(entities: Dict[str, Entity]) -> List[Relationship]:
    found: List[Relationship] = []

    for path, entity in entities.items():
        if entity.parent is None:
            continue
        found.append(Relationship(path, entity.parent, MANY_TO_ONE, NESTING, 1.0))
        found.append(Relationship(entity.parent, path, ONE_TO_MANY, NESTING, 1.0))

    index: Dict[str, str] = {}
    for path, entity in entities.items():
        index[entity.table_name] = path
        index.setdefault(singular(entity.table_name), path)

    for path, entity in entities.items():
        for fk in entity.foreign_keys:
            target = index.get(fk.target_hint) or index.get(plural(fk.target_hint))
            if target is None or target == path:
                found.append(
                    Relationship(
                        path, None, UNRESOLVED_FK, FOREIGN_KEY, 0.5,
                        field=fk.field, target_hint=fk.target_hint,
                    )
                )
            else:
                found.append(
                    Relationship(path, target, MANY_TO_ONE, FOREIGN_KEY, 0.85, field=fk.field)
                )

    seen = set()
    unique = []
    for rel in found:
        key = (rel.source, rel.target, rel.via, rel.field)
        if key not in seen:
            seen.add(key)
            unique.append(rel)
    return sorted(unique, key=lambda r: (-r.confidence, r.via))


def _creation_order(
    entities: Dict[str, Entity], relationships: List[Relationship]
) -> List[Dict[str, Any]]:
    """Parents before children (Kahn's algorithm, shallowest first)."""
    depends_on: Dict[str, set] = {path: set() for path in entities}
    for rel in relationships:
        if rel.kind == MANY_TO_ONE and rel.target in entities and rel.source in entities:
            depends_on[rel.source].add(rel.target)

    pending = {path: len(deps) for path, deps in depends_on.items()}
    ready = [path for path, count in pending.items() if count == 0]
    order: List[Dict[str, Any]] = []

    while ready:
        ready.sort(key=lambda p: (entities[p].depth, p))
        path = ready.pop(0)
        entity = entities[path]
        order.append(_order_entry(entity, entities, cyclic=False))
        for other, deps in depends_on.items():
            if path in deps:
                pending[other] -= 1
                if pending[other] == 0:
                    ready.append(other)

    placed = {entry["path"] for entry in order}
    for path, entity in entities.items():
        if path not in placed:
            order.append(_order_entry(entity, entities, cyclic=True))
    return order


def _order_entry(entity: Entity, entities: Dict[str, Entity], cyclic: bool) -> Dict[str, Any]:
    if cyclic:
        reason = "circular dependency; verify manually"
    elif entity.parent:
        reason = f"depends on {entities[entity.parent].table_name}"
    else:
        reason = "root entity"
    return {
        "table_name": entity.table_name,
        "path": entity.path,
        "depth": entity.depth,
        "id_field": entity.id_field,
        "reason": reason,
    }

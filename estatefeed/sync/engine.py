"""estatefeed — Reconciliation Engine.

Turns decoded feed collections into rows of the catalog tables. One public
operation per collection; each is idempotent and processes its records
sequentially, committing every record on its own so a bad record costs
only itself.

Callers own the ordering: reference collections, then blocks, then
buildings, then apartments, then `mark_stale_apartments`, all with the same
`sync_at` captured once per run.
"""

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP
from typing import Any, Callable, Dict, Iterable, Optional, Type

from sqlalchemy import or_, update
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, StatementError
from sqlmodel import Session, SQLModel, select

from estatefeed.core.errors import RecordErrorKind
from estatefeed.core.logging import get_logger
from estatefeed.feed.parsing import (
    MONEY_QUANT,
    ensure_utc,
    extract_address,
    extract_coordinates,
    feed_id,
    feed_ref,
    first_url,
    is_blank,
    parse_bool,
    parse_date,
    parse_decimal,
    parse_int,
    parse_str,
    point_wkt,
    string_list,
    utc_now,
)
from estatefeed.models.catalog_models import (
    Apartment,
    Block,
    BlockSubway,
    Builder,
    Building,
    BuildingType,
    Finishing,
    Region,
    Room,
    Subway,
)
from estatefeed.sync.denormalize import apply_projection, project
from estatefeed.sync.results import BatchReport, RecordResult

logger = get_logger("sync.engine")

DEFAULT_STALE_THRESHOLD = timedelta(minutes=5)

# Warning kinds recorded on a BatchReport
UNRESOLVED_REFERENCES = "unresolved_references"
UNRESOLVED_SUBWAYS = "unresolved_subways"

RecordHandler = Callable[[Dict[str, Any], BatchReport], RecordResult]


class ReconciliationEngine:
    """Upserts feed collections into the catalog tables."""

    def __init__(self, session: Session, feed_source: Optional[str] = None):
        self.session = session
        self.feed_source = feed_source

    # ── Batch driver ──

    def _run(
        self, collection: str, records: Iterable[Any], handler: RecordHandler
    ) -> BatchReport:
        report = BatchReport(collection=collection)

        for raw in records:
            if not isinstance(raw, dict):
                result = RecordResult.failed(
                    RecordErrorKind.MISSING_IDENTIFIER,
                    f"{collection} record is not an object",
                )
            else:
                try:
                    result = handler(raw, report)
                    if result.ok:
                        self.session.commit()
                except IntegrityError as e:
                    self.session.rollback()
                    result = RecordResult.failed(
                        RecordErrorKind.INTEGRITY_ERROR,
                        str(e.orig)[:300],
                        record_id=feed_id(raw),
                    )
                except (DataError, ArithmeticError, ValueError) as e:
                    result = self._invalid_value(e, raw)
                except StatementError as e:
                    # OperationalError and other driver failures abort the batch
                    if isinstance(e, DBAPIError):
                        raise
                    result = self._invalid_value(e, raw)

            report.add(result)
            if not result.ok:
                logger.warning(
                    f"Skipped {collection} record: {result.message}",
                    extra={
                        "collection": collection,
                        "entity_id": result.record_id,
                        "error_kind": result.error.value if result.error else None,
                    },
                )

        logger.info(
            f"{collection}: received={report.received} inserted={report.inserted} "
            f"updated={report.updated} failed={report.failed}",
            extra={"collection": collection},
        )
        return report

    def _invalid_value(self, error: Exception, raw: Dict[str, Any]) -> RecordResult:
        """Roll back a record whose values the database could not store."""
        self.session.rollback()
        cause = getattr(error, "orig", None) or error
        return RecordResult.failed(
            RecordErrorKind.INVALID_VALUE,
            f"{type(cause).__name__}: {cause}"[:300],
            record_id=feed_id(raw),
        )

    def _save(
        self, model: Type[SQLModel], key: Any, values: Dict[str, Any], key_field: str = "id"
    ) -> RecordResult:
        """Insert or update one row by primary key; does not commit."""
        now = utc_now()
        row = self.session.get(model, key)
        if row is None:
            row = model(**{key_field: key}, **values, created_at=now, updated_at=now)
            self.session.add(row)
            return RecordResult.inserted(key)

        for column, value in values.items():
            setattr(row, column, value)
        row.updated_at = now
        self.session.add(row)
        return RecordResult.updated(key)

    def _existing_id(
        self, model: Type[SQLModel], value: Any, report: BatchReport
    ) -> Optional[str]:
        """Return the referenced id if that row exists, else NULL plus a warning.

        A malformed id is treated like one that points nowhere.
        """
        if is_blank(value):
            return None
        ref = feed_ref(value)
        if ref is None or self.session.get(model, ref) is None:
            report.warn(UNRESOLVED_REFERENCES)
            return None
        return ref

    # ── Reference entities ──

    def _reference_handler(
        self,
        model: Type[SQLModel],
        extra: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None,
    ) -> RecordHandler:
        table = model.__tablename__

        def handle(raw: Dict[str, Any], report: BatchReport) -> RecordResult:
            record_id = feed_id(raw)
            if record_id is None:
                return _missing_id(table, raw)
            values = {
                "crm_id": parse_int(raw.get("crm_id")),
                "name": parse_str(raw.get("name")) or "",
            }
            if extra:
                values.update(extra(raw))
            return self._save(model, record_id, values)

        return handle

    def upsert_regions(self, records: Iterable[Any]) -> BatchReport:
        return self._run("regions", records, self._reference_handler(Region))

    def upsert_builders(self, records: Iterable[Any]) -> BatchReport:
        def extra(raw):
            return {"logo_url": _cut(first_url(raw.get("logo", raw.get("logo_url"))), 512)}

        return self._run("builders", records, self._reference_handler(Builder, extra))

    def upsert_finishings(self, records: Iterable[Any]) -> BatchReport:
        return self._run("finishings", records, self._reference_handler(Finishing))

    def upsert_building_types(self, records: Iterable[Any]) -> BatchReport:
        return self._run(
            "building_types", records, self._reference_handler(BuildingType)
        )

    def upsert_subways(self, records: Iterable[Any]) -> BatchReport:
        def extra(raw):
            line = raw.get("line") if isinstance(raw.get("line"), dict) else {}
            return {
                "line_name": parse_str(raw.get("line_name", line.get("name")), 100),
                "line_color": parse_str(raw.get("line_color", line.get("color")), 20),
            }

        return self._run("subways", records, self._reference_handler(Subway, extra))

    def upsert_rooms(self, records: Iterable[Any]) -> BatchReport:
        """Rooms are keyed by their numeric crm_id (0 = studio)."""

        def handle(raw: Dict[str, Any], report: BatchReport) -> RecordResult:
            crm_id = parse_int(raw.get("crm_id"))
            if crm_id is None:
                return RecordResult.failed(
                    RecordErrorKind.MISSING_IDENTIFIER,
                    "rooms record has no crm_id",
                    record_id=feed_id(raw),
                )
            values = {
                "feed_id": feed_id(raw),
                "name": parse_str(raw.get("name")) or "",
            }
            return self._save(Room, crm_id, values, key_field="crm_id")

        return self._run("rooms", records, handle)

    # ── Hierarchy ──

    def upsert_blocks(self, records: Iterable[Any]) -> BatchReport:
        """Blocks plus their subway links. min/max price and area are left alone."""

        def handle(raw: Dict[str, Any], report: BatchReport) -> RecordResult:
            record_id = feed_id(raw)
            if record_id is None:
                return _missing_id("blocks", raw)

            district_id = self._existing_id(Region, raw.get("district"), report)
            builder_id = self._existing_id(Builder, raw.get("builder"), report)
            district = self.session.get(Region, district_id) if district_id else None
            builder = self.session.get(Builder, builder_id) if builder_id else None

            geometry = raw.get("geometry")
            lat, lng = extract_coordinates(geometry)
            status = parse_int(raw.get("status"))

            values = {
                "crm_id": parse_int(raw.get("crm_id")),
                "name": parse_str(raw.get("name")) or "",
                "description": parse_str(raw.get("description")),
                "address": _cut(extract_address(raw.get("address")), 512),
                "district_id": district_id,
                "district_name": district.name if district else None,
                "builder_id": builder_id,
                "builder_name": builder.name if builder else None,
                "lat": lat,
                "lng": lng,
                "location": point_wkt(lat, lng),
                "geometry_json": geometry if isinstance(geometry, (dict, list)) else None,
                "is_city": parse_bool(raw.get("is_city", raw.get("iscity")), default=True),
                "status": status if status is not None else 1,
                "deadline_at": parse_date(raw.get("deadline")),
                "images": string_list(raw.get("renderer", raw.get("images"))),
            }
            result = self._save(Block, record_id, values)
            self.session.flush()
            self._sync_subway_links(record_id, raw.get("subway"), report)
            return result

        return self._run("blocks", records, handle)

    def _sync_subway_links(self, block_id: str, entries: Any, report: BatchReport) -> None:
        """Make the block's subway links match the feed's list."""
        wanted: Dict[str, Dict[str, Optional[int]]] = {}
        for entry in entries if isinstance(entries, list) else []:
            if not isinstance(entry, dict):
                continue
            if is_blank(entry.get("subway_id")):
                continue
            subway_id = feed_ref(entry.get("subway_id"))
            if subway_id is None or self.session.get(Subway, subway_id) is None:
                report.warn(UNRESOLVED_SUBWAYS)
                continue
            wanted[subway_id] = {
                "travel_time": parse_int(entry.get("distance_time")),
                "travel_type": parse_int(entry.get("distance_type")),
            }

        existing = self.session.exec(
            select(BlockSubway).where(BlockSubway.block_id == block_id)
        ).all()
        for link in existing:
            if link.subway_id not in wanted:
                self.session.delete(link)

        for subway_id, values in wanted.items():
            link = self.session.get(
                BlockSubway, {"block_id": block_id, "subway_id": subway_id}
            )
            if link is None:
                link = BlockSubway(block_id=block_id, subway_id=subway_id)
            link.travel_time = values["travel_time"]
            link.travel_type = values["travel_type"]
            self.session.add(link)

    def upsert_buildings(self, records: Iterable[Any]) -> BatchReport:
        def handle(raw: Dict[str, Any], report: BatchReport) -> RecordResult:
            record_id = feed_id(raw)
            if record_id is None:
                return _missing_id("buildings", raw)

            raw_block = raw.get("block_id")
            block_id = None
            if not is_blank(raw_block):
                block_id = feed_ref(raw_block)
                if block_id is None or self.session.get(Block, block_id) is None:
                    return RecordResult.failed(
                        RecordErrorKind.DANGLING_REFERENCE,
                        f"building {record_id} references missing block {_shown(raw_block)}",
                        record_id=record_id,
                    )

            lat, lng = extract_coordinates(raw.get("geometry"))
            status = parse_int(raw.get("status"))
            values = {
                "crm_id": parse_int(raw.get("crm_id")),
                "block_id": block_id,
                "name": parse_str(raw.get("name"), 100),
                "building_type_id": self._existing_id(
                    BuildingType, raw.get("building_type"), report
                ),
                "floors_total": parse_int(raw.get("floors")),
                "deadline_at": parse_date(raw.get("deadline")),
                "queue": parse_int(raw.get("queue")),
                "height": parse_decimal(raw.get("height")),
                "status": status if status is not None else 1,
                "lat": lat,
                "lng": lng,
                "banks": string_list(raw.get("building_bank")),
            }
            return self._save(Building, record_id, values)

        return self._run("buildings", records, handle)

    def upsert_apartments(self, records: Iterable[Any], sync_at: datetime) -> BatchReport:
        """Upsert apartments, copy parent fields and stamp them as seen at `sync_at`."""
        sync_at = ensure_utc(sync_at)

        def handle(raw: Dict[str, Any], report: BatchReport) -> RecordResult:
            record_id = feed_id(raw)
            if record_id is None:
                return _missing_id("apartments", raw)

            raw_building = raw.get("building_id")
            building_id = feed_ref(raw_building)
            building = self.session.get(Building, building_id) if building_id else None
            if building is None:
                return RecordResult.failed(
                    RecordErrorKind.DANGLING_REFERENCE,
                    f"apartment {record_id} references missing building {_shown(raw_building)}",
                    record_id=record_id,
                )

            raw_block = raw.get("block_id")
            block_id = building.block_id if is_blank(raw_block) else feed_ref(raw_block)
            block = self.session.get(Block, block_id) if block_id else None
            if block is None:
                return RecordResult.failed(
                    RecordErrorKind.DANGLING_REFERENCE,
                    f"apartment {record_id} references missing block {_shown(raw_block)}",
                    record_id=record_id,
                )

            room = parse_int(raw.get("room"))
            rooms_crm_id = (
                room if room is not None and self.session.get(Room, room) else None
            )
            area_total = parse_decimal(raw.get("area_total"))
            price = parse_decimal(raw.get("price"))
            price_per_meter = parse_decimal(raw.get("price_per_meter"))
            if price_per_meter is None and price is not None and area_total:
                price_per_meter = (price / area_total).quantize(
                    MONEY_QUANT, rounding=ROUND_HALF_UP
                )

            values = {
                "crm_id": parse_int(raw.get("crm_id")),
                "building_id": building.id,
                "block_id": block.id,
                "room": room,
                "rooms_crm_id": rooms_crm_id,
                "floor": parse_int(raw.get("floor")),
                "floors_total": parse_int(raw.get("floors")),
                "number": parse_str(raw.get("number"), 30),
                "wc_count": parse_int(raw.get("wc_count")),
                "area_total": area_total,
                "area_living": parse_decimal(
                    raw.get("area_living", raw.get("area_rooms_total"))
                ),
                "area_kitchen": parse_decimal(raw.get("area_kitchen")),
                "area_given": parse_decimal(raw.get("area_given")),
                "area_balconies": parse_decimal(raw.get("area_balconies_total")),
                "area_rooms": _area_breakdown(raw.get("area_rooms")),
                "area_rooms_total": parse_decimal(raw.get("area_rooms_total")),
                "price": price,
                "price_per_meter": price_per_meter,
                "finishing_id": self._existing_id(Finishing, raw.get("finishing"), report),
                "building_type_id": self._existing_id(
                    BuildingType, raw.get("building_type"), report
                ),
                "plan_url": _cut(first_url(raw.get("plan")), 512),
                "is_deleted": False,
            }
            values.update(project(block, building))
            if self.feed_source is not None:
                values["feed_source"] = self.feed_source

            existing = self.session.get(Apartment, record_id)
            last_seen = sync_at
            if existing is not None and existing.last_seen_at is not None:
                last_seen = max(ensure_utc(existing.last_seen_at), sync_at)
            values["last_seen_at"] = last_seen

            return self._save(Apartment, record_id, values)

        return self._run("apartments", records, handle)

    # ── Staleness ──

    def mark_stale_apartments(
        self,
        sync_at: datetime,
        stale_threshold: timedelta = DEFAULT_STALE_THRESHOLD,
    ) -> int:
        """Soft-delete apartments not seen since `sync_at - stale_threshold`.

        Scoped to this engine's feed source when one is set. Rows are never
        removed; they only leave the listing through `is_deleted`.
        """
        cutoff = ensure_utc(sync_at) - stale_threshold
        stmt = (
            update(Apartment)
            .where(
                Apartment.is_deleted == False,  # noqa: E712
                or_(
                    Apartment.last_seen_at.is_(None),  # type: ignore
                    Apartment.last_seen_at < cutoff,  # type: ignore
                ),
            )
            .values(is_deleted=True, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        if self.feed_source is not None:
            stmt = stmt.where(Apartment.feed_source == self.feed_source)

        result = self.session.execute(stmt)
        self.session.commit()
        self.session.expire_all()
        marked = result.rowcount or 0
        logger.info(
            f"Marked {marked} apartments stale (cutoff {cutoff.isoformat()})",
            extra={"collection": "apartments"},
        )
        return marked

    # ── Drift repair ──

    def rebuild_denormalized(self) -> int:
        """Re-derive every apartment's parent copies from the live tables."""
        blocks = {b.id: b for b in self.session.exec(select(Block)).all()}
        buildings = {b.id: b for b in self.session.exec(select(Building)).all()}
        now = utc_now()
        changed = 0

        for apartment in self.session.exec(select(Apartment)).all():
            block = blocks.get(apartment.block_id)
            if block is None:
                continue
            values = project(block, buildings.get(apartment.building_id))
            if apply_projection(apartment, values):
                apartment.updated_at = now
                self.session.add(apartment)
                changed += 1

        self.session.commit()
        logger.info(f"Rebuilt denormalized columns on {changed} apartments")
        return changed


def _missing_id(collection: str, raw: Dict[str, Any]) -> RecordResult:
    value = raw.get("_id")
    if is_blank(value):
        message = f"{collection} record has no _id"
    else:
        message = f"{collection} record has malformed _id {str(value)[:40]!r}"
    return RecordResult.failed(RecordErrorKind.MISSING_IDENTIFIER, message)


def _shown(value: Any) -> str:
    return repr(str(value)[:40])


def _cut(value: Optional[str], length: int) -> Optional[str]:
    return value[:length] if value else value


def _area_breakdown(value: Any) -> Optional[str]:
    """Per-room areas as text: "17+12.6" or [17, 12.6] → "17+12.6"."""
    if isinstance(value, list):
        parts = [str(v) for v in value if v is not None and not isinstance(v, (dict, list))]
        return _cut("+".join(parts), 100) or None
    return parse_str(value, 100)

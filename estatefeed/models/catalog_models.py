"""estatefeed — Catalog Models (Normalized Feed Entities).

Every row here is written only by the reconciliation engine during a sync.
Feed entities are keyed by the feed's 24-character object id; rooms are
keyed by their numeric CRM code instead.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import JSON, Column, Index, Text
from sqlmodel import Field, SQLModel

FEED_ID_LENGTH = 24


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────
# REFERENCE ENTITIES
# ─────────────────────────────────────────────


class Region(SQLModel, table=True):
    """District the residential complexes are grouped by."""

    __tablename__ = "regions"

    id: str = Field(primary_key=True, max_length=FEED_ID_LENGTH)
    crm_id: Optional[int] = Field(default=None, unique=True)
    name: str = Field(default="")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Builder(SQLModel, table=True):
    """Developer company."""

    __tablename__ = "builders"

    id: str = Field(primary_key=True, max_length=FEED_ID_LENGTH)
    crm_id: Optional[int] = Field(default=None, unique=True)
    name: str = Field(default="")
    logo_url: Optional[str] = Field(default=None, max_length=512)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Finishing(SQLModel, table=True):
    """Interior finishing level (shell, white box, turnkey...)."""

    __tablename__ = "finishings"

    id: str = Field(primary_key=True, max_length=FEED_ID_LENGTH)
    crm_id: Optional[int] = Field(default=None, unique=True)
    name: str = Field(default="")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class BuildingType(SQLModel, table=True):
    """Construction type (monolith, panel, brick...)."""

    __tablename__ = "building_types"

    id: str = Field(primary_key=True, max_length=FEED_ID_LENGTH)
    crm_id: Optional[int] = Field(default=None, unique=True)
    name: str = Field(default="")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Room(SQLModel, table=True):
    """Room-count classification.

    crm_id is the business key: 0 = studio, 1 = one room, and so on.
    These codes are shared with the apartments table and the listing API,
    so they are never renumbered.
    """

    __tablename__ = "rooms"

    crm_id: int = Field(primary_key=True, sa_column_kwargs={"autoincrement": False})
    feed_id: Optional[str] = Field(
        default=None, unique=True, max_length=FEED_ID_LENGTH, description="Feed _id"
    )
    name: str = Field(default="")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Subway(SQLModel, table=True):
    """Metro station."""

    __tablename__ = "subways"

    id: str = Field(primary_key=True, max_length=FEED_ID_LENGTH)
    crm_id: Optional[int] = Field(default=None, unique=True)
    name: str = Field(default="")
    line_name: Optional[str] = Field(default=None, max_length=100)
    line_color: Optional[str] = Field(default=None, max_length=20)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ─────────────────────────────────────────────
# HIERARCHY — Block → Building → Apartment
# ─────────────────────────────────────────────


class Block(SQLModel, table=True):
    """Residential complex."""

    __tablename__ = "blocks"

    id: str = Field(primary_key=True, max_length=FEED_ID_LENGTH)
    crm_id: Optional[int] = Field(default=None, unique=True)
    name: str = Field(default="")
    description: Optional[str] = Field(default=None, sa_column=Column(Text))
    address: Optional[str] = Field(default=None, max_length=512)

    district_id: Optional[str] = Field(
        default=None, foreign_key="regions.id", index=True, max_length=FEED_ID_LENGTH
    )
    district_name: Optional[str] = Field(default=None)
    builder_id: Optional[str] = Field(
        default=None, foreign_key="builders.id", index=True, max_length=FEED_ID_LENGTH
    )
    builder_name: Optional[str] = Field(default=None)

    lat: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=7)
    lng: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=7)
    location: Optional[str] = Field(
        default=None, max_length=64, description="WKT POINT(lng lat), derived"
    )
    geometry_json: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    is_city: bool = Field(default=True, index=True)
    status: int = Field(default=1)
    deadline_at: Optional[date] = Field(default=None, index=True)

    # Maintained by a separate aggregation step, never by the sync engine
    min_price: Optional[Decimal] = Field(default=None, max_digits=15, decimal_places=2)
    max_price: Optional[Decimal] = Field(default=None, max_digits=15, decimal_places=2)
    min_area: Optional[Decimal] = Field(default=None, max_digits=8, decimal_places=2)
    max_area: Optional[Decimal] = Field(default=None, max_digits=8, decimal_places=2)

    images: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class BlockSubway(SQLModel, table=True):
    """Block ↔ subway link with travel time to the station."""

    __tablename__ = "block_subway"

    block_id: str = Field(
        primary_key=True, foreign_key="blocks.id", max_length=FEED_ID_LENGTH
    )
    subway_id: str = Field(
        primary_key=True, foreign_key="subways.id", max_length=FEED_ID_LENGTH
    )
    travel_time: Optional[int] = Field(default=None, description="Minutes")
    travel_type: Optional[int] = Field(default=None, description="1=walk, 2=transport")


class Building(SQLModel, table=True):
    """Single building (korpus) inside a block."""

    __tablename__ = "buildings"

    id: str = Field(primary_key=True, max_length=FEED_ID_LENGTH)
    crm_id: Optional[int] = Field(default=None, unique=True)
    block_id: Optional[str] = Field(
        default=None, foreign_key="blocks.id", index=True, max_length=FEED_ID_LENGTH
    )
    name: Optional[str] = Field(default=None, max_length=100)
    building_type_id: Optional[str] = Field(
        default=None,
        foreign_key="building_types.id",
        index=True,
        max_length=FEED_ID_LENGTH,
    )
    floors_total: Optional[int] = None
    deadline_at: Optional[date] = Field(default=None, index=True)
    queue: Optional[int] = None
    height: Optional[Decimal] = Field(default=None, max_digits=6, decimal_places=2)
    status: int = Field(default=1)
    lat: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=7)
    lng: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=7)
    banks: Optional[List[str]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Apartment(SQLModel, table=True):
    """Sellable unit.

    Carries denormalized block/building columns so every listing filter
    runs against this table alone. Those columns are a cache of the parent
    rows, rebuilt on every sync; `is_deleted` is the only way a row leaves
    the listing.
    """

    __tablename__ = "apartments"
    __table_args__ = (
        Index("idx_apartments_price_area", "price", "area_total"),
        Index("idx_apartments_district_room", "block_district_id", "room"),
        Index("idx_apartments_city_room_price", "block_is_city", "room", "price"),
        Index("idx_apartments_geo", "block_lat", "block_lng"),
    )

    id: str = Field(primary_key=True, max_length=FEED_ID_LENGTH)
    crm_id: Optional[int] = Field(default=None, unique=True)

    building_id: str = Field(
        foreign_key="buildings.id", index=True, max_length=FEED_ID_LENGTH
    )
    block_id: str = Field(foreign_key="blocks.id", index=True, max_length=FEED_ID_LENGTH)

    room: Optional[int] = Field(default=None, description="0=studio, 1=1-room, ...")
    rooms_crm_id: Optional[int] = Field(
        default=None, foreign_key="rooms.crm_id", index=True
    )
    floor: Optional[int] = Field(default=None, index=True)
    floors_total: Optional[int] = None
    number: Optional[str] = Field(default=None, max_length=30)
    wc_count: Optional[int] = None

    area_total: Optional[Decimal] = Field(
        default=None, max_digits=8, decimal_places=2, index=True
    )
    area_living: Optional[Decimal] = Field(default=None, max_digits=8, decimal_places=2)
    area_kitchen: Optional[Decimal] = Field(default=None, max_digits=8, decimal_places=2)
    area_given: Optional[Decimal] = Field(default=None, max_digits=8, decimal_places=2)
    area_balconies: Optional[Decimal] = Field(
        default=None, max_digits=8, decimal_places=2
    )
    area_rooms: Optional[str] = Field(
        default=None, max_length=100, description='Room breakdown, e.g. "17+12.6"'
    )
    area_rooms_total: Optional[Decimal] = Field(
        default=None, max_digits=8, decimal_places=2
    )

    price: Optional[Decimal] = Field(
        default=None, max_digits=15, decimal_places=2, index=True
    )
    price_per_meter: Optional[Decimal] = Field(
        default=None, max_digits=12, decimal_places=2
    )

    finishing_id: Optional[str] = Field(
        default=None, foreign_key="finishings.id", index=True, max_length=FEED_ID_LENGTH
    )
    building_type_id: Optional[str] = Field(
        default=None, foreign_key="building_types.id", max_length=FEED_ID_LENGTH
    )
    plan_url: Optional[str] = Field(default=None, max_length=512)

    # ── Denormalized from Block ──
    block_name: Optional[str] = None
    block_district_id: Optional[str] = Field(
        default=None, index=True, max_length=FEED_ID_LENGTH
    )
    block_district_name: Optional[str] = None
    block_builder_id: Optional[str] = Field(
        default=None, index=True, max_length=FEED_ID_LENGTH
    )
    block_builder_name: Optional[str] = None
    block_lat: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=7)
    block_lng: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=7)
    block_is_city: bool = Field(default=True, index=True)

    # ── Denormalized from Building ──
    building_deadline_at: Optional[date] = Field(default=None, index=True)

    # ── Sync bookkeeping ──
    feed_source: Optional[str] = Field(
        default=None, index=True, max_length=32, description="MD5 of the feed base URL"
    )
    is_deleted: bool = Field(default=False, index=True)
    last_seen_at: Optional[datetime] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

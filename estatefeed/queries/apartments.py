"""estatefeed — Apartment Listing Queries.

Every filter reads columns of the `apartments` table only; the denormalized
block/building copies exist so that no listing query needs a join.

Deleted apartments are excluded through the explicit `not_deleted()`
predicate. A read path that wants them must pass `include_deleted=True`.
"""

import math
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, StringConstraints, model_validator
from sqlalchemy import func
from sqlmodel import Session, select

from estatefeed.models.catalog_models import FEED_ID_LENGTH, Apartment, Finishing, Room

EARTH_RADIUS_M = 6_371_000

FeedId = Annotated[
    str, StringConstraints(min_length=FEED_ID_LENGTH, max_length=FEED_ID_LENGTH)
]

SORT_COLUMNS = {
    "price": Apartment.price,
    "area_total": Apartment.area_total,
    "building_deadline_at": Apartment.building_deadline_at,
    "floor": Apartment.floor,
}


class ApartmentFilters(BaseModel):
    """Query parameters accepted by the apartment listing."""

    price_min: Optional[Decimal] = Field(None, ge=0)
    price_max: Optional[Decimal] = Field(None, ge=0)
    area_min: Optional[Decimal] = Field(None, ge=0)
    area_max: Optional[Decimal] = Field(None, ge=0)
    room: List[Annotated[int, Field(ge=0)]] = []
    """Room codes: 0 = studio, 1 = one room, ..."""
    district: List[FeedId] = []
    builder: List[FeedId] = []
    finishing: List[FeedId] = []
    floor_min: Optional[int] = Field(None, ge=1)
    floor_max: Optional[int] = Field(None, ge=1)
    deadline_from: Optional[date] = None
    """Building deadline lower bound, YYYY-MM-DD."""
    deadline_to: Optional[date] = None
    is_city: Optional[bool] = None
    search: Optional[str] = Field(None, max_length=200)
    """Matched against block, builder and district names."""
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    radius: Optional[int] = Field(None, ge=100, le=50000)
    """Search radius in meters; requires lat and lng."""
    sort: Literal["price", "area_total", "building_deadline_at", "floor"] = "price"
    order: Literal["asc", "desc"] = "asc"
    page: int = Field(1, ge=1)
    per_page: int = Field(20, ge=1, le=100)

    @model_validator(mode="after")
    def _check_ranges(self) -> "ApartmentFilters":
        geo = (self.lat, self.lng, self.radius)
        if any(v is not None for v in geo) and not all(v is not None for v in geo):
            raise ValueError("lat, lng and radius must be given together")
        for low, high in (
            ("price_min", "price_max"),
            ("area_min", "area_max"),
            ("floor_min", "floor_max"),
            ("deadline_from", "deadline_to"),
        ):
            lo, hi = getattr(self, low), getattr(self, high)
            if lo is not None and hi is not None and lo > hi:
                raise ValueError(f"{low} must not exceed {high}")
        return self

    @property
    def has_geo(self) -> bool:
        return self.radius is not None


@dataclass
class ApartmentPage:
    items: List[Apartment]
    total: int
    page: int
    per_page: int

    @property
    def last_page(self) -> int:
        return max(1, math.ceil(self.total / self.per_page))


def not_deleted():
    """Default listing scope: apartments still present in the feed."""
    return Apartment.is_deleted == False  # noqa: E712


def build_conditions(filters: ApartmentFilters, include_deleted: bool = False) -> list:
    conditions = [] if include_deleted else [not_deleted()]

    if filters.price_min is not None:
        conditions.append(Apartment.price >= filters.price_min)
    if filters.price_max is not None:
        conditions.append(Apartment.price <= filters.price_max)
    if filters.area_min is not None:
        conditions.append(Apartment.area_total >= filters.area_min)
    if filters.area_max is not None:
        conditions.append(Apartment.area_total <= filters.area_max)
    if filters.room:
        conditions.append(Apartment.room.in_(filters.room))  # type: ignore
    if filters.district:
        conditions.append(Apartment.block_district_id.in_(filters.district))  # type: ignore
    if filters.builder:
        conditions.append(Apartment.block_builder_id.in_(filters.builder))  # type: ignore
    if filters.finishing:
        conditions.append(Apartment.finishing_id.in_(filters.finishing))  # type: ignore
    if filters.floor_min is not None:
        conditions.append(Apartment.floor >= filters.floor_min)
    if filters.floor_max is not None:
        conditions.append(Apartment.floor <= filters.floor_max)
    if filters.deadline_from is not None:
        conditions.append(Apartment.building_deadline_at >= filters.deadline_from)
    if filters.deadline_to is not None:
        conditions.append(Apartment.building_deadline_at <= filters.deadline_to)
    if filters.is_city is not None:
        conditions.append(Apartment.block_is_city == filters.is_city)
    if filters.search:
        term = filters.search.strip()
        if term:
            conditions.append(
                Apartment.block_name.icontains(term, autoescape=True)  # type: ignore
                | Apartment.block_builder_name.icontains(term, autoescape=True)  # type: ignore
                | Apartment.block_district_name.icontains(term, autoescape=True)  # type: ignore
            )
    if filters.has_geo:
        conditions.extend(_bounding_box(filters.lat, filters.lng, filters.radius))

    return conditions


def _bounding_box(lat: float, lng: float, radius: int) -> list:
    """Coarse lat/lng box around the circle, refined by `haversine_m` later."""
    dlat = math.degrees(radius / EARTH_RADIUS_M)
    cos_lat = max(math.cos(math.radians(lat)), 1e-6)
    dlng = min(math.degrees(radius / (EARTH_RADIUS_M * cos_lat)), 180.0)
    return [
        Apartment.block_lat.is_not(None),  # type: ignore
        Apartment.block_lng.is_not(None),  # type: ignore
        Apartment.block_lat >= _coord(lat - dlat),
        Apartment.block_lat <= _coord(lat + dlat),
        Apartment.block_lng >= _coord(lng - dlng),
        Apartment.block_lng <= _coord(lng + dlng),
    ]


def _coord(value: float) -> Decimal:
    return Decimal(str(round(value, 7)))


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


def _ordering(filters: ApartmentFilters) -> list:
    column = SORT_COLUMNS[filters.sort]
    primary = column.desc() if filters.order == "desc" else column.asc()  # type: ignore
    return [primary, Apartment.id]


def search_apartments(
    session: Session, filters: ApartmentFilters, include_deleted: bool = False
) -> ApartmentPage:
    """Paginated apartment listing."""
    conditions = build_conditions(filters, include_deleted=include_deleted)
    offset = (filters.page - 1) * filters.per_page

    if filters.has_geo:
        candidates = session.exec(
            select(Apartment).where(*conditions).order_by(*_ordering(filters))
        ).all()
        inside = [
            a
            for a in candidates
            if haversine_m(filters.lat, filters.lng, float(a.block_lat), float(a.block_lng))
            <= filters.radius
        ]
        return ApartmentPage(
            items=inside[offset : offset + filters.per_page],
            total=len(inside),
            page=filters.page,
            per_page=filters.per_page,
        )

    total = session.exec(
        select(func.count()).select_from(Apartment).where(*conditions)
    ).one()
    items = session.exec(
        select(Apartment)
        .where(*conditions)
        .order_by(*_ordering(filters))
        .offset(offset)
        .limit(filters.per_page)
    ).all()
    return ApartmentPage(
        items=list(items), total=total, page=filters.page, per_page=filters.per_page
    )


def get_apartment(
    session: Session, apartment_id: str, include_deleted: bool = False
) -> Optional[Apartment]:
    query = select(Apartment).where(Apartment.id == apartment_id)
    if not include_deleted:
        query = query.where(not_deleted())
    return session.exec(query).first()


def filter_options(session: Session) -> Dict[str, Any]:
    """Values and ranges the listing can currently be filtered by."""
    live = not_deleted()

    room_codes = session.exec(
        select(Apartment.room).where(live, Apartment.room.is_not(None)).distinct()  # type: ignore
    ).all()
    rooms = session.exec(
        select(Room).where(Room.crm_id.in_(room_codes)).order_by(Room.crm_id)  # type: ignore
    ).all()

    districts = session.exec(
        select(Apartment.block_district_id, Apartment.block_district_name)
        .where(live, Apartment.block_district_id.is_not(None))  # type: ignore
        .distinct()
        .order_by(Apartment.block_district_name)
    ).all()
    builders = session.exec(
        select(Apartment.block_builder_id, Apartment.block_builder_name)
        .where(live, Apartment.block_builder_id.is_not(None))  # type: ignore
        .distinct()
        .order_by(Apartment.block_builder_name)
    ).all()

    finishing_ids = session.exec(
        select(Apartment.finishing_id)
        .where(live, Apartment.finishing_id.is_not(None))  # type: ignore
        .distinct()
    ).all()
    finishings = session.exec(
        select(Finishing).where(Finishing.id.in_(finishing_ids)).order_by(Finishing.name)  # type: ignore
    ).all()

    bounds = session.exec(
        select(
            func.min(Apartment.price),
            func.max(Apartment.price),
            func.min(Apartment.area_total),
            func.max(Apartment.area_total),
            func.min(Apartment.floor),
            func.max(Apartment.floor),
            func.min(Apartment.building_deadline_at),
            func.max(Apartment.building_deadline_at),
        ).where(live)
    ).one()

    return {
        "rooms": [{"id": r.crm_id, "name": r.name} for r in rooms],
        "districts": [{"id": d[0], "name": d[1]} for d in districts],
        "builders": [{"id": b[0], "name": b[1]} for b in builders],
        "finishings": [{"id": f.id, "name": f.name} for f in finishings],
        "price": {"min": bounds[0], "max": bounds[1]},
        "area": {"min": bounds[2], "max": bounds[3]},
        "floor": {"min": bounds[4], "max": bounds[5]},
        "deadline": {"min": bounds[6], "max": bounds[7]},
    }

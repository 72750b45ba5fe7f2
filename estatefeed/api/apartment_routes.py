"""estatefeed — Apartment Listing API Routes."""

from decimal import Decimal
from typing import Annotated, Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session

from estatefeed.database import get_session
from estatefeed.models.catalog_models import Apartment
from estatefeed.queries.apartments import (
    ApartmentFilters,
    filter_options,
    get_apartment,
    search_apartments,
)
from estatefeed.core.logging import get_logger

logger = get_logger("api.apartments")

router = APIRouter(prefix="/api/v1", tags=["Apartments"])

LISTING_FIELDS = (
    "id",
    "crm_id",
    "block_id",
    "building_id",
    "room",
    "floor",
    "floors_total",
    "number",
    "area_total",
    "area_kitchen",
    "price",
    "price_per_meter",
    "finishing_id",
    "plan_url",
    "block_name",
    "block_district_id",
    "block_district_name",
    "block_builder_id",
    "block_builder_name",
    "block_lat",
    "block_lng",
    "block_is_city",
    "building_deadline_at",
)

DETAIL_FIELDS = LISTING_FIELDS + (
    "rooms_crm_id",
    "wc_count",
    "area_living",
    "area_given",
    "area_balconies",
    "area_rooms",
    "area_rooms_total",
    "building_type_id",
    "last_seen_at",
    "updated_at",
)


def _json_value(value: Any) -> Any:
    # Money and coordinates leave the API as exact strings
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def serialize_apartment(apartment: Apartment, fields=LISTING_FIELDS) -> Dict[str, Any]:
    return {name: _json_value(getattr(apartment, name)) for name in fields}


@router.get("/apartments")
async def list_apartments(
    filters: Annotated[ApartmentFilters, Query()],
    session: Session = Depends(get_session),
):
    """Paginated apartment search.

    Invalid parameters are rejected with 422 and a per-field error list.
    """
    page = search_apartments(session, filters)
    logger.debug(f"Apartment search matched {page.total} rows (page {page.page})")
    return {
        "status": "success",
        "data": [serialize_apartment(a) for a in page.items],
        "meta": {
            "total": page.total,
            "page": page.page,
            "per_page": page.per_page,
            "last_page": page.last_page,
        },
    }


@router.get("/apartments/{apartment_id}")
async def show_apartment(apartment_id: str, session: Session = Depends(get_session)):
    """Single apartment; deleted apartments are not found."""
    apartment = get_apartment(session, apartment_id)
    if apartment is None:
        raise HTTPException(status_code=404, detail=f"Apartment {apartment_id} not found")
    return {"status": "success", "data": serialize_apartment(apartment, DETAIL_FIELDS)}


@router.get("/filters")
async def get_filters(session: Session = Depends(get_session)):
    """Available filter values and ranges over live apartments."""
    options = filter_options(session)
    for key in ("price", "area", "floor", "deadline"):
        options[key] = {k: _json_value(v) for k, v in options[key].items()}
    return {"status": "success", "data": options}

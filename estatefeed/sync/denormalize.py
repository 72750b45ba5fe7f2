"""estatefeed — Apartment denormalization projection.

The listing API filters apartments without joins, so each apartment carries
copies of a few Block and Building columns. This module is the single
definition of that copy: a pure function from parent rows to column values,
used both at upsert time and by the bulk rebuild.
"""

from typing import Any, Dict, Optional

from estatefeed.models.catalog_models import Apartment, Block, Building

DENORMALIZED_COLUMNS = (
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


def project(block: Block, building: Optional[Building] = None) -> Dict[str, Any]:
    """Denormalized apartment columns for a given parent block/building."""
    return {
        "block_name": block.name,
        "block_district_id": block.district_id,
        "block_district_name": block.district_name,
        "block_builder_id": block.builder_id,
        "block_builder_name": block.builder_name,
        "block_lat": block.lat,
        "block_lng": block.lng,
        "block_is_city": block.is_city,
        "building_deadline_at": building.deadline_at if building else None,
    }


def apply_projection(apartment: Apartment, values: Dict[str, Any]) -> bool:
    """Copy projected values onto `apartment`; True if anything changed."""
    changed = False
    for column, value in values.items():
        if getattr(apartment, column) != value:
            setattr(apartment, column, value)
            changed = True
    return changed

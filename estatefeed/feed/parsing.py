"""estatefeed — Feed value parsing helpers.

Pure functions that turn loosely-typed feed values into column values.
Money, areas and coordinates go through `Decimal(str(value))` so a float
in the JSON is never used for arithmetic.
"""

import hashlib
import math
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional, Tuple

from estatefeed.models.catalog_models import FEED_ID_LENGTH

MONEY_QUANT = Decimal("0.01")
COORD_QUANT = Decimal("0.0000001")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are taken as UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def url_hash(url: str) -> str:
    """Fixed-length index key for a URL."""
    return hashlib.md5(url.encode("utf-8")).hexdigest()


def feed_ref(value: Any) -> Optional[str]:
    """A feed object id, or None unless it is exactly FEED_ID_LENGTH characters.

    Ids are never shortened to fit: a truncated id could alias another row.
    """
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text if len(text) == FEED_ID_LENGTH else None


def feed_id(row: dict) -> Optional[str]:
    """Return the record's own `_id`, or None when absent or malformed."""
    return feed_ref(row.get("_id"))


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().replace(" ", "").replace(",", ".")
        if not value:
            return None
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def parse_decimal(value: Any, positive_only: bool = True) -> Optional[Decimal]:
    """Parse a money/area value into a 2-place Decimal ("62.5" → 62.50)."""
    parsed = _to_decimal(value)
    if parsed is None:
        return None
    if positive_only and parsed <= 0:
        return None
    return parsed.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def parse_coordinate(value: Any) -> Optional[Decimal]:
    parsed = _to_decimal(value)
    if parsed is None:
        return None
    return parsed.quantize(COORD_QUANT, rounding=ROUND_HALF_UP)


def parse_int(value: Any) -> Optional[int]:
    """Whole numbers only: 3, 3.0 and "3" parse; 2.7, inf and "three" give None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            return None
        return int(value)
    parsed = _to_decimal(value)
    if parsed is None or parsed != parsed.to_integral_value():
        return None
    return int(parsed)


def parse_str(value: Any, max_length: Optional[int] = None) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    if not text:
        return None
    return text[:max_length] if max_length else text


def parse_bool(value: Any, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in ("true", "1", "yes", "y", "on")


def parse_date(value: Any) -> Optional[date]:
    """Parse an ISO date or datetime string; anything else → None."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def extract_coordinates(geometry: Any) -> Tuple[Optional[Decimal], Optional[Decimal]]:
    """Extract (lat, lng) from a GeoJSON geometry or a flat [lng, lat] pair.

    GeoJSON orders coordinates as [lng, lat]; polygons use their first vertex.
    """
    if not geometry:
        return None, None

    if isinstance(geometry, dict):
        if "lat" in geometry and ("lng" in geometry or "lon" in geometry):
            return (
                parse_coordinate(geometry.get("lat")),
                parse_coordinate(geometry.get("lng", geometry.get("lon"))),
            )
        coords = geometry.get("coordinates")
        if isinstance(coords, list) and coords:
            if _is_number(coords[0]) and len(coords) >= 2 and _is_number(coords[1]):
                return parse_coordinate(coords[1]), parse_coordinate(coords[0])
            first = coords[0]
            if isinstance(first, list) and first and isinstance(first[0], list):
                vertex = first[0]
                if len(vertex) >= 2 and _is_number(vertex[0]) and _is_number(vertex[1]):
                    return parse_coordinate(vertex[1]), parse_coordinate(vertex[0])
        return None, None

    if isinstance(geometry, list) and len(geometry) >= 2:
        if _is_number(geometry[0]) and _is_number(geometry[1]):
            return parse_coordinate(geometry[1]), parse_coordinate(geometry[0])

    return None, None


def point_wkt(lat: Optional[Decimal], lng: Optional[Decimal]) -> Optional[str]:
    """Derived spatial point; only defined when both coordinates are known."""
    if lat is None or lng is None:
        return None
    return f"POINT({lng} {lat})"


def extract_address(address: Any) -> Optional[str]:
    if address is None:
        return None
    if isinstance(address, str):
        return address.strip() or None
    if isinstance(address, list):
        parts = [a.strip() for a in address if isinstance(a, str) and a.strip()]
        return ", ".join(parts) or None
    if isinstance(address, dict):
        for key in ("full", "street", "housing"):
            if isinstance(address.get(key), str) and address[key].strip():
                return address[key].strip()
    return None


def first_url(value: Any) -> Optional[str]:
    """First URL of a plan/logo field given as a string or a list of strings."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, list) and value and isinstance(value[0], str):
        return value[0]
    return None


def string_list(value: Any) -> Optional[list]:
    """Coerce a scalar or list of ids/urls to a JSON-safe list of strings."""
    if value is None:
        return None
    if not isinstance(value, list):
        value = [value]
    items = [str(v) for v in value if v is not None and not isinstance(v, (dict, list))]
    return items or None


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    return _to_decimal(value) is not None if isinstance(value, str) else False

"""Remote listing record -> car columns.

Mapping is driven by ``FIELD_PATHS``: for every column an ordered list of
dotted paths into the remote record, the first non-empty match wins. Top-level
keys that no mapped path consumed are kept in the ``raw`` sidecar.
"""

import hashlib
import json
import logging
import math
import re
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from app.models.car import SaleStatus

logger = logging.getLogger(__name__)

# Namespace for deterministic car ids (uuid5 of "<source_site>:<external_id>")
CAR_ID_NAMESPACE = uuid.UUID("6f1c2b0e-7d4a-5c55-9a3e-2f8b1d0c4e71")

# Columns shown to users; data_hash changes iff one of these changes
DISPLAYED_FIELDS = (
    "make",
    "model",
    "year",
    "price_cents",
    "mileage_km",
    "fuel",
    "transmission",
    "color",
    "body_type",
    "vin",
    "lot_number",
    "images",
    "sale_status",
)

STATUS_ALIASES = {
    "active": SaleStatus.ACTIVE,
    "available": SaleStatus.ACTIVE,
    "open": SaleStatus.ACTIVE,
    "live": SaleStatus.ACTIVE,
    "for_sale": SaleStatus.ACTIVE,
    "pending": SaleStatus.PENDING,
    "reserved": SaleStatus.PENDING,
    "upcoming": SaleStatus.PENDING,
    "in_progress": SaleStatus.PENDING,
    "sold": SaleStatus.SOLD,
    "closed": SaleStatus.SOLD,
    "archived": SaleStatus.ARCHIVED,
    "removed": SaleStatus.ARCHIVED,
}


# Largest value a BIGINT column holds
MAX_DB_INT = 2**63 - 1


class MappingError(ValueError):
    """Raised when a remote record cannot be mapped (no usable id)."""


def _to_number(value: Any) -> float | None:
    """Finite float from a number or a formatted string, else None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
    else:
        cleaned = re.sub(r"[^\d.]", "", str(value))
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    return number if math.isfinite(number) else None


def _to_int(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool):
        return value if abs(value) <= MAX_DB_INT else None
    number = _to_number(value)
    if number is None or abs(number) > MAX_DB_INT:
        return None
    return int(number)


def _to_year(value: Any) -> int | None:
    year = _to_int(value)
    if year is None or not 1886 <= year <= 2100:
        return None
    return year


def _to_cents(value: Any) -> int | None:
    amount = _to_number(value)
    if amount is None or amount <= 0:
        return None
    cents = round(amount * 100)
    if cents > MAX_DB_INT:
        logger.debug(f"Dropping out of range price {value!r}")
        return None
    return int(cents)


def _to_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("name")
        if value is None:
            return None
    text = str(value).strip()
    return text or None


def _to_images(value: Any) -> list[str]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return [value] if value.startswith("http") else []
    if not isinstance(value, list):
        return []
    return [str(url) for url in value if url]


def _to_status(value: Any) -> str | None:
    text = _to_text(value)
    if not text:
        return None
    status = STATUS_ALIASES.get(text.lower().replace(" ", "_"))
    if status is None:
        logger.debug(f"Unknown remote sale status {text!r}, treating as active")
        return SaleStatus.ACTIVE.value
    return status.value


# column -> (ordered dotted paths, converter)
FIELD_PATHS: list[tuple[str, tuple[str, ...], Callable[[Any], Any]]] = [
    ("make", ("manufacturer.name", "make", "brand"), _to_text),
    ("model", ("model.name", "model"), _to_text),
    ("year", ("year",), _to_year),
    ("price_cents", ("lots.0.buy_now", "lots.0.bid", "price"), _to_cents),
    ("mileage_km", ("lots.0.odometer.km", "mileage", "odometer"), _to_int),
    ("fuel", ("fuel.name", "fuel"), _to_text),
    ("transmission", ("transmission.name", "transmission"), _to_text),
    ("color", ("color.name", "color"), _to_text),
    ("body_type", ("body_type.name", "body_type"), _to_text),
    ("vin", ("vin",), _to_text),
    ("lot_number", ("lots.0.lot", "lot_number"), _to_text),
    ("images", ("lots.0.images.normal", "images"), _to_images),
    ("sale_status", ("lots.0.status.name", "lots.0.status", "status", "sale_status"), _to_status),
]


def get_path(record: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path; numeric segments index into lists."""
    current: Any = record
    for segment in path.split("."):
        if isinstance(current, dict):
            current = current.get(segment)
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def make_car_id(source_site: str, external_id: str) -> str:
    """Stable internal id: identical for the same listing across syncs."""
    return str(uuid.uuid5(CAR_ID_NAMESPACE, f"{source_site}:{external_id}"))


def compute_data_hash(columns: dict[str, Any]) -> str:
    displayed = {name: columns.get(name) for name in DISPLAYED_FIELDS}
    encoded = json.dumps(displayed, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def compute_rank_score(columns: dict[str, Any], now: datetime | None = None) -> float:
    """Listing quality score in [0, 1] used by the ``rank``/``popular`` sorts.

    Rewards photos, a known price, a recent model year and identifying data.
    """
    now = now or datetime.utcnow()
    score = 0.0

    images = columns.get("images") or []
    score += 0.35 * min(len(images), 10) / 10
    if columns.get("price_cents"):
        score += 0.25

    year = columns.get("year")
    if year:
        age = max(0, now.year - year)
        score += 0.2 * max(0.0, 1 - age / 20)

    if columns.get("mileage_km") is not None:
        score += 0.1
    if columns.get("vin"):
        score += 0.1

    return round(min(score, 1.0), 4)


def map_record(record: dict[str, Any], source_site: str) -> dict[str, Any]:
    """Map one remote record onto car columns.

    Returns:
        Dict with ``id``, ``external_id``, ``source_site``, every displayed
        column, ``rank_score``, ``data_hash`` and ``raw``

    Raises:
        MappingError: If the record has no id
    """
    raw_id = record.get("id")
    if raw_id is None or isinstance(raw_id, (dict, list)):
        raw_id = record.get("external_id")
    external_id = _to_text(raw_id) if not isinstance(raw_id, (dict, list)) else None
    if external_id is None:
        raise MappingError("Record has no id")

    columns: dict[str, Any] = {
        "id": make_car_id(source_site, external_id),
        "external_id": external_id,
        "source_site": source_site,
    }
    consumed = {"id", "external_id"}

    for column, paths, convert in FIELD_PATHS:
        value = None
        for path in paths:
            candidate = convert(get_path(record, path))
            if candidate not in (None, []):
                value = candidate
                consumed.add(path.split(".", 1)[0])
                break
        columns[column] = value

    if columns["images"] is None:
        columns["images"] = []
    if columns["sale_status"] is None:
        columns["sale_status"] = SaleStatus.ACTIVE.value

    columns["rank_score"] = compute_rank_score(columns)
    columns["data_hash"] = compute_data_hash(columns)

    extras = {key: value for key, value in record.items() if key not in consumed}
    columns["raw"] = extras or None
    return columns


def map_records(
    records: list[dict[str, Any]], source_site: str
) -> tuple[list[dict[str, Any]], int]:
    """Map a page of records, skipping unmappable ones.

    Returns:
        Tuple of (mapped rows, skipped count)
    """
    mapped = []
    skipped = 0
    for record in records:
        if not isinstance(record, dict):
            skipped += 1
            logger.warning(f"Skipping non-object record: {record!r:.80}")
            continue
        try:
            mapped.append(map_record(record, source_site))
        except MappingError as e:
            skipped += 1
            logger.warning(f"Skipping unmappable record: {e}")
    return mapped, skipped

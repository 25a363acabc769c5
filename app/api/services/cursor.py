"""Opaque keyset cursors.

A cursor is URL-safe base64 (unpadded) of a compact JSON object::

    {"s": sort key, "t": value type, "v": sort value, "i": car id, "f": filter fingerprint}

The type tag keeps the last sort value exact across the round trip,
including ``None`` (rows sorted NULLS LAST) and datetimes.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any


class CursorError(ValueError):
    """Malformed cursor, or a cursor issued for a different sort or filter set."""


@dataclass(frozen=True)
class Cursor:
    """Position after the last row of a page."""

    sort: str
    value: Any
    id: str
    fingerprint: str


def _tag(value: Any) -> tuple[str, Any]:
    if value is None:
        return "n", None
    if isinstance(value, bool):
        raise CursorError("Boolean sort values are not supported")
    if isinstance(value, int):
        return "i", value
    if isinstance(value, float):
        return "f", value
    if isinstance(value, str):
        return "s", value
    if isinstance(value, datetime):
        return "d", value.isoformat()
    raise CursorError(f"Unsupported sort value type: {type(value).__name__}")


def _untag(tag: str, raw: Any) -> Any:
    if tag == "n":
        if raw is not None:
            raise CursorError("Cursor null value carries data")
        return None
    if tag == "i" and isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    if tag == "f" and isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return float(raw)
    if tag == "s" and isinstance(raw, str):
        return raw
    if tag == "d" and isinstance(raw, str):
        try:
            return datetime.fromisoformat(raw)
        except ValueError as e:
            raise CursorError("Cursor datetime is invalid") from e
    raise CursorError("Cursor value does not match its type")


def encode_cursor(cursor: Cursor) -> str:
    tag, value = _tag(cursor.value)
    payload = {
        "s": cursor.sort,
        "t": tag,
        "v": value,
        "i": cursor.id,
        "f": cursor.fingerprint,
    }
    raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def decode_cursor(token: str) -> Cursor:
    """Decode a cursor token.

    Raises:
        CursorError: If the token is not a cursor this API issued
    """
    if not token or len(token) > 2048:
        raise CursorError("Cursor is empty or too long")
    try:
        padded = token + "=" * (-len(token) % 4)
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise CursorError("Cursor is not valid") from e

    if not isinstance(payload, dict) or set(payload) != {"s", "t", "v", "i", "f"}:
        raise CursorError("Cursor is not valid")
    sort, tag, car_id, fingerprint = payload["s"], payload["t"], payload["i"], payload["f"]
    if not all(isinstance(part, str) for part in (sort, tag, car_id, fingerprint)):
        raise CursorError("Cursor is not valid")

    return Cursor(sort=sort, value=_untag(tag, payload["v"]), id=car_id, fingerprint=fingerprint)


def validate_cursor(cursor: Cursor, sort: str, fingerprint: str) -> None:
    """Reject reuse of a cursor under another sort key or filter set."""
    if cursor.sort != sort:
        raise CursorError(f"Cursor was issued for sort '{cursor.sort}', not '{sort}'")
    if cursor.fingerprint != fingerprint:
        raise CursorError("Cursor was issued for a different filter set")

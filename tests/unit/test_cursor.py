"""Tests for keyset cursor encoding."""

import base64
import json
from datetime import datetime

import pytest

from app.api.services.cursor import (
    Cursor,
    CursorError,
    decode_cursor,
    encode_cursor,
    validate_cursor,
)


def _token(payload) -> str:
    raw = json.dumps(payload).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class TestCursorCodec:
    """Test suite for cursor encode/decode."""

    @pytest.mark.parametrize(
        "value",
        [None, 0, 1_250_000, 0.4375, "Škoda", datetime(2024, 3, 1, 8, 30, 15, 123456)],
    )
    def test_value_types_survive(self, value):
        """Test every supported sort value comes back with its exact type."""
        cursor = Cursor(sort="price_asc", value=value, id="car-1", fingerprint="abc")
        decoded = decode_cursor(encode_cursor(cursor))
        assert decoded == cursor
        assert type(decoded.value) is type(value)

    def test_token_is_url_safe(self):
        """Test tokens carry no padding or URL-reserved characters."""
        token = encode_cursor(Cursor(sort="make_desc", value="?&/+", id="x" * 36, fingerprint="f"))
        assert "=" not in token
        assert "+" not in token
        assert "/" not in token

    @pytest.mark.parametrize(
        "token",
        [
            "",
            "not-base64!!",
            "x" * 3000,
            _token(["s", "t"]),
            _token({"s": "price_asc", "t": "i", "v": 1, "i": "a"}),
            _token({"s": "price_asc", "t": "i", "v": "7", "i": "a", "f": "f"}),
            _token({"s": "price_asc", "t": "n", "v": 3, "i": "a", "f": "f"}),
            _token({"s": "price_asc", "t": "d", "v": "yesterday", "i": "a", "f": "f"}),
            _token({"s": "price_asc", "t": "i", "v": True, "i": "a", "f": "f"}),
            _token({"s": 1, "t": "i", "v": 1, "i": "a", "f": "f"}),
            _token({"s": "price_asc", "t": "x", "v": 1, "i": "a", "f": "f"}),
        ],
    )
    def test_malformed_tokens_rejected(self, token):
        """Test malformed or tampered tokens raise CursorError."""
        with pytest.raises(CursorError):
            decode_cursor(token)

    def test_cursor_error_is_value_error(self):
        """Test CursorError can be handled as a ValueError."""
        assert issubclass(CursorError, ValueError)


class TestCursorValidation:
    """Test suite for binding cursors to sort and filters."""

    def test_matching_cursor_accepted(self):
        """Test a cursor is accepted under its own sort and filters."""
        cursor = Cursor(sort="year_desc", value=2020, id="a", fingerprint="fp1")
        validate_cursor(cursor, "year_desc", "fp1")

    def test_other_sort_rejected(self):
        """Test a cursor cannot be replayed under another sort."""
        cursor = Cursor(sort="year_desc", value=2020, id="a", fingerprint="fp1")
        with pytest.raises(CursorError, match="sort"):
            validate_cursor(cursor, "year_asc", "fp1")

    def test_other_filters_rejected(self):
        """Test a cursor cannot be replayed under another filter set."""
        cursor = Cursor(sort="year_desc", value=2020, id="a", fingerprint="fp1")
        with pytest.raises(CursorError, match="filter"):
            validate_cursor(cursor, "year_desc", "fp2")

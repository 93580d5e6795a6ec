"""
Tests for migrations/sqlite_to_postgres/type_converter.py

Covers:
- Declared SQLite type normalisation
- Conversion to canonical values per type
- Conversion failures naming table and field
- Canonical values passing validation
- Zero padded canonical timestamps
- Type detection from sampled values
"""

from datetime import UTC, datetime

import pytest

from migrations.sqlite_to_postgres.exceptions import ConversionError
from migrations.sqlite_to_postgres.models import TypeName
from migrations.sqlite_to_postgres.type_converter import (
    convert,
    detect_type,
    format_timestamp,
    normalize_declared_type,
    parse_timestamp,
    target_sql_type,
    validate,
)


# ---------------------------------------------------------------------------
# Declared types
# ---------------------------------------------------------------------------


class TestNormalizeDeclaredType:
    @pytest.mark.parametrize(
        "declared, expected",
        [
            ("INTEGER", TypeName.INTEGER),
            ("bigint", TypeName.INTEGER),
            ("VARCHAR(255)", TypeName.TEXT),
            ("TEXT", TypeName.TEXT),
            ("REAL", TypeName.DECIMAL),
            ("decimal(10,2)", TypeName.DECIMAL),
            ("BLOB", TypeName.BINARY),
            ("DATETIME", TypeName.TIMESTAMP),
            ("date", TypeName.TIMESTAMP),
            ("BOOLEAN", TypeName.BOOLEAN),
            ("JSON", TypeName.JSON),
            ("GEOMETRY", TypeName.TEXT),
        ],
    )
    def test_known_types(self, declared, expected):
        assert normalize_declared_type(declared) == expected

    @pytest.mark.parametrize("declared", [None, "", "   "])
    def test_typeless_column(self, declared):
        assert normalize_declared_type(declared) is None

    def test_target_sql_types(self):
        assert target_sql_type(TypeName.JSON) == "JSONB"
        assert target_sql_type(TypeName.BINARY) == "BYTEA"
        assert target_sql_type(TypeName.DECIMAL) == "DECIMAL"


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


class TestConvert:
    @pytest.mark.parametrize("type_name", list(TypeName))
    def test_none_is_preserved(self, type_name):
        assert convert(None, type_name) is None

    def test_integer_from_numeric_string(self):
        assert convert("42", TypeName.INTEGER) == 42
        assert convert(7.0, TypeName.INTEGER) == 7

    def test_decimal(self):
        assert convert("3.25", TypeName.DECIMAL) == 3.25
        assert convert(2, TypeName.DECIMAL) == 2.0

    def test_binary_becomes_hex(self):
        assert convert(b"\x01\xff", TypeName.BINARY) == "\\x01ff"

    def test_binary_hex_string_passes_through(self):
        assert convert("\\xdeadbeef", TypeName.BINARY) == "\\xdeadbeef"

    def test_timestamp_from_string(self):
        assert convert("2024-01-15 10:30:00", TypeName.TIMESTAMP) == "2024-01-15T10:30:00.000Z"

    def test_timestamp_from_epoch_seconds(self):
        assert convert(0, TypeName.TIMESTAMP) == "1970-01-01T00:00:00.000Z"

    def test_timestamp_from_epoch_milliseconds(self):
        assert convert(1_705_314_600_000, TypeName.TIMESTAMP) == "2024-01-15T10:30:00.000Z"

    def test_timestamp_with_offset_normalised_to_utc(self):
        assert convert("2024-01-15T12:30:00+02:00", TypeName.TIMESTAMP) == "2024-01-15T10:30:00.000Z"

    def test_empty_timestamp_is_null(self):
        assert convert("", TypeName.TIMESTAMP) is None

    @pytest.mark.parametrize("value, expected", [(1, True), (0, False), ("true", True), ("FALSE", False), ("1", True)])
    def test_boolean(self, value, expected):
        assert convert(value, TypeName.BOOLEAN) is expected

    def test_json_parses_strings(self):
        assert convert('{"a": [1, 2]}', TypeName.JSON) == {"a": [1, 2]}

    def test_unparsable_json_passes_through(self):
        assert convert("not json", TypeName.JSON) == "not json"

    def test_unknown_type_treated_as_text(self):
        assert convert(12, "geometry") == "12"

    def test_failure_names_table_and_field(self):
        with pytest.raises(ConversionError) as exc_info:
            convert("abc", TypeName.INTEGER, field="age", table="players")
        assert exc_info.value.table == "players"
        assert exc_info.value.field == "age"
        assert "players.age" in str(exc_info.value)

    @pytest.mark.parametrize(
        "value, type_name",
        [
            ("12", TypeName.INTEGER),
            (3, TypeName.TEXT),
            ("1.5", TypeName.DECIMAL),
            (b"\x00", TypeName.BINARY),
            ("raw text", TypeName.BINARY),
            ("2023-06-01", TypeName.TIMESTAMP),
            (1, TypeName.BOOLEAN),
            ("[1, 2]", TypeName.JSON),
            ("plain", TypeName.JSON),
        ],
    )
    def test_converted_values_validate(self, value, type_name):
        assert validate(convert(value, type_name), type_name)


class TestTimestamps:
    def test_format_naive_datetime_as_utc(self):
        assert format_timestamp(datetime(2024, 3, 1, 12, 0, 0, 123456)) == "2024-03-01T12:00:00.123Z"

    def test_parse_rejects_non_dates(self):
        with pytest.raises(ValueError):
            parse_timestamp("hello")

    def test_parse_returns_aware_utc(self):
        assert parse_timestamp("2024-01-01").tzinfo == UTC

    def test_years_before_1000_are_zero_padded(self):
        assert format_timestamp(datetime(99, 6, 1)) == "0099-06-01T00:00:00.000Z"
        assert convert("0099-06-01T00:00:00", TypeName.TIMESTAMP) == "0099-06-01T00:00:00.000Z"


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class TestDetectType:
    def test_empty_sample_is_text(self):
        assert detect_type([None, None]) == TypeName.TEXT

    def test_json_majority(self):
        assert detect_type(['{"a": 1}', "[1]", "x"]) == TypeName.JSON

    def test_date_majority(self):
        assert detect_type(["2024-01-01", "2024-02-01T10:00:00Z", "n/a"]) == TypeName.TIMESTAMP

    def test_zero_one_numbers_are_boolean(self):
        assert detect_type([0, 1, 1, None]) == TypeName.BOOLEAN

    def test_zero_one_heuristic_can_be_disabled(self):
        assert detect_type([1], allow_boolean=False) == TypeName.INTEGER

    def test_integers(self):
        assert detect_type([1, 2, 30]) == TypeName.INTEGER

    def test_mixed_numbers_are_decimal(self):
        assert detect_type([1, 2.5]) == TypeName.DECIMAL

    def test_plain_strings_are_text(self):
        assert detect_type(["a", "b"]) == TypeName.TEXT

    def test_only_first_hundred_values_sampled(self):
        values = [5] * 100 + ["text"] * 50
        assert detect_type(values) == TypeName.INTEGER

    def test_strings_that_only_start_like_dates_are_text(self):
        slugs = ["2024-01-11-match-report", "2024-01-12-transfer-news", "2024-01-13-season-preview"]
        assert detect_type(slugs) == TypeName.TEXT

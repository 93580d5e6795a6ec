"""
Tests for DataValidator in migrations/sqlite_to_postgres/validator.py

Covers:
- id rule
- Timestamp repair (one warning per corrected field, valid values untouched)
- Table specific rules
- Duplicate id detection
- sanitize_timestamps helper
"""

import pytest

from migrations.sqlite_to_postgres.models import Severity, TransformedDataset, TypeName
from migrations.sqlite_to_postgres.validator import (
    DataValidator,
    ValidationRule,
    is_valid_timestamp,
    sanitize_timestamps,
)


def dataset_of(records: list[dict], table: str = "articles") -> TransformedDataset:
    return TransformedDataset(tables={table: records}, column_types={table: {"id": TypeName.INTEGER}})


class TestIdRule:
    def test_integer_id_passes(self):
        assert DataValidator().validate_data(dataset_of([{"id": 1}])) == []

    @pytest.mark.parametrize("bad_id", [None, "1", True, 1.5])
    def test_invalid_id_is_error(self, bad_id):
        issues = DataValidator().validate_data(dataset_of([{"id": bad_id}]))
        assert len(issues) == 1
        assert issues[0].severity == Severity.ERROR
        assert issues[0].field == "id"

    def test_tables_without_id_column_skip_rule(self):
        dataset = TransformedDataset(tables={"links": [{"article_id": 1, "tag_id": 2}]})
        assert DataValidator().validate_data(dataset) == []


class TestTimestampRepair:
    def test_out_of_range_year_replaced_with_single_warning(self):
        dataset = dataset_of(
            [{"id": 1, "created_at": "1800-01-01T00:00:00.000Z", "updated_at": "2024-01-01T00:00:00.000Z"}]
        )
        issues = DataValidator().validate_data(dataset)

        assert len(issues) == 1
        assert issues[0].severity == Severity.WARNING
        assert issues[0].field == "created_at"
        record = dataset.tables["articles"][0]
        assert is_valid_timestamp(record["created_at"])
        assert record["updated_at"] == "2024-01-01T00:00:00.000Z"

    def test_unparsable_value_replaced(self):
        dataset = dataset_of([{"id": 1, "published_at": "yesterday"}])
        issues = DataValidator().validate_data(dataset)
        assert [i.field for i in issues] == ["published_at"]
        assert dataset.tables["articles"][0]["published_at"] != "yesterday"

    def test_each_bad_field_warns_once(self):
        dataset = dataset_of([{"id": 1, "created_at": "junk", "updated_at": "2500-01-01", "published_at": None}])
        issues = DataValidator().validate_data(dataset)
        assert sorted(i.field for i in issues) == ["created_at", "updated_at"]
        assert dataset.tables["articles"][0]["published_at"] is None

    def test_empty_values_left_alone(self):
        dataset = dataset_of([{"id": 1, "created_at": None, "published_at": ""}])
        assert DataValidator().validate_data(dataset) == []
        assert dataset.tables["articles"][0]["published_at"] == ""


class TestTableRules:
    def test_rule_is_additive_and_scoped(self):
        validator = DataValidator()
        validator.add_validation_rule(
            "articles",
            ValidationRule(field="title", check=lambda v: bool(v), message="Title is required"),
        )
        dataset = TransformedDataset(
            tables={"articles": [{"id": 1, "title": ""}], "pages": [{"id": 1, "title": ""}]},
        )
        issues = validator.validate_data(dataset)
        assert [(i.table, i.field) for i in issues] == [("articles", "title")]


class TestIntegrity:
    def test_duplicate_ids(self):
        issues = DataValidator().validate_integrity(dataset_of([{"id": 1}, {"id": 2}, {"id": 1}]))
        assert len(issues) == 1
        assert issues[0].record_id == 1


class TestSanitizeTimestamps:
    def test_returns_copy_and_corrected_fields(self):
        record = {"id": 1, "created_at": "0001-01-01", "updated_at": "2024-05-05T00:00:00.000Z"}
        sanitized, corrected = sanitize_timestamps(record)
        assert corrected == ["created_at"]
        assert record["created_at"] == "0001-01-01"
        assert sanitized["updated_at"] == record["updated_at"]
        assert is_valid_timestamp(sanitized["created_at"])

    @pytest.mark.parametrize(
        "value, expected",
        [("2024-01-01", True), ("1900-01-01", True), ("2100-12-31", True), ("1899-12-31", False), ("abc", False)],
    )
    def test_is_valid_timestamp(self, value, expected):
        assert is_valid_timestamp(value) is expected

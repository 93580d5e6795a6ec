import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable

from migrations.sqlite_to_postgres.models import Severity, TransformedDataset, ValidationIssue
from migrations.sqlite_to_postgres.type_converter import now_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

TIMESTAMP_FIELDS = ("created_at", "updated_at", "published_at")
MIN_TIMESTAMP_YEAR = 1900
MAX_TIMESTAMP_YEAR = 2100


def is_valid_timestamp(value: Any) -> bool:
    """True when the value parses to a date between 1900 and 2100"""
    try:
        parsed = parse_timestamp(value)
    except ValueError:
        return False
    return MIN_TIMESTAMP_YEAR <= parsed.year <= MAX_TIMESTAMP_YEAR


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def sanitize_timestamps(record: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    """Return a copy of the record with invalid lifecycle timestamps replaced by now.

    The second element lists the fields that were corrected.
    """
    sanitized = dict(record)
    corrected = []
    for field in TIMESTAMP_FIELDS:
        value = sanitized.get(field)
        if is_empty(value) or is_valid_timestamp(value):
            continue
        sanitized[field] = now_timestamp()
        corrected.append(field)
    return sanitized, corrected


def _is_integer_id(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass
class ValidationRule:
    field: str
    check: Callable[[Any], bool]
    message: str
    severity: Severity = Severity.ERROR
    fix: Callable[[Any], Any] | None = None
    skip_empty: bool = False


def default_rules() -> list[ValidationRule]:
    rules = [
        ValidationRule(
            field="id",
            check=_is_integer_id,
            message="Record id must be present and an integer",
        )
    ]
    for field in TIMESTAMP_FIELDS:
        rules.append(
            ValidationRule(
                field=field,
                check=is_valid_timestamp,
                message=f"Invalid {field} timestamp replaced with current time",
                severity=Severity.WARNING,
                fix=lambda _value: now_timestamp(),
                skip_empty=True,
            )
        )
    return rules


class DataValidator:
    def __init__(self):
        self.default_rules = default_rules()
        self.table_rules: dict[str, list[ValidationRule]] = defaultdict(list)

    def add_validation_rule(self, table: str, rule: ValidationRule):
        self.table_rules[table].append(rule)

    def rules_for(self, table: str) -> list[ValidationRule]:
        return self.default_rules + self.table_rules.get(table, [])

    def validate_data(self, dataset: TransformedDataset) -> list[ValidationIssue]:
        """Apply the default and table-specific rules to every record.

        Rules with a fix correct the record in place and report a warning; the
        id rule only applies to tables that have an id column.
        """
        issues = []
        for table, records in dataset.tables.items():
            has_id_column = "id" in dataset.column_types.get(table, {}) or any("id" in r for r in records)
            for record in records:
                for rule in self.rules_for(table):
                    if rule.field == "id" and not has_id_column:
                        continue
                    if rule.field != "id" and rule.field not in record:
                        continue

                    value = record.get(rule.field)
                    if rule.skip_empty and is_empty(value):
                        continue
                    if rule.check(value):
                        continue

                    message = rule.message
                    if rule.fix is not None:
                        record[rule.field] = rule.fix(value)
                        message = f"{rule.message} (was {value!r})"
                    issues.append(
                        ValidationIssue(
                            table=table,
                            record_id=record.get("id"),
                            field=rule.field,
                            message=message,
                            severity=rule.severity,
                        )
                    )

        logger.info(
            f"Validated {dataset.total_records:,} records: "
            f"{sum(1 for i in issues if i.severity == Severity.ERROR)} errors, "
            f"{sum(1 for i in issues if i.severity == Severity.WARNING)} warnings"
        )
        return issues

    def validate_integrity(self, dataset: TransformedDataset) -> list[ValidationIssue]:
        """Report duplicate ids within each table"""
        issues = []
        for table, records in dataset.tables.items():
            seen = set()
            for record in records:
                record_id = record.get("id")
                if record_id is None:
                    continue
                if record_id in seen:
                    issues.append(
                        ValidationIssue(
                            table=table,
                            record_id=record_id,
                            field="id",
                            message=f"Duplicate id {record_id!r}",
                            severity=Severity.ERROR,
                        )
                    )
                seen.add(record_id)
        return issues

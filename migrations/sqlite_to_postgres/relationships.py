import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from migrations.sqlite_to_postgres.models import ForeignKeyInfo, Severity, TransformedDataset, ValidationIssue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Relationship:
    """A many-to-one reference from ``source_table.source_field`` to ``target_table.target_field``"""

    source_table: str
    source_field: str
    target_table: str
    target_field: str = "id"
    type: str = "many_to_one"


class RelationshipMapper:
    """Track table relationships, validate references and compute a load order"""

    def __init__(self):
        self._relationships: dict[str, list[Relationship]] = defaultdict(list)
        self.detected_cycles: list[tuple[str, str]] = []

    def add_relationship(self, relationship: Relationship):
        if relationship not in self._relationships[relationship.source_table]:
            self._relationships[relationship.source_table].append(relationship)

    def get_relationships(self, table: str) -> list[Relationship]:
        return list(self._relationships.get(table, []))

    def build_from_foreign_keys(self, foreign_keys: dict[str, list[ForeignKeyInfo]]):
        for table, table_fks in foreign_keys.items():
            for fk in table_fks:
                self.add_relationship(
                    Relationship(
                        source_table=table,
                        source_field=fk.from_column,
                        target_table=fk.to_table,
                        target_field=fk.to_column,
                    )
                )

    def validate_relationships(self, dataset: TransformedDataset) -> list[ValidationIssue]:
        """Report every non-null reference whose target row does not exist."""
        issues = []
        # (table, field) -> set of existing values, built lazily
        index_cache: dict[tuple[str, str], set[Any]] = {}

        for table, relationships in self._relationships.items():
            records = dataset.tables.get(table)
            if records is None:
                continue

            for rel in relationships:
                if rel.target_table not in dataset.tables:
                    issues.append(
                        ValidationIssue(
                            table=table,
                            field=rel.source_field,
                            message=f"Referenced table {rel.target_table} not found in dataset",
                            severity=Severity.ERROR,
                        )
                    )
                    continue

                key = (rel.target_table, rel.target_field)
                if key not in index_cache:
                    index_cache[key] = {
                        record.get(rel.target_field)
                        for record in dataset.tables[rel.target_table]
                        if record.get(rel.target_field) is not None
                    }
                existing = index_cache[key]

                for record in records:
                    value = record.get(rel.source_field)
                    if value is None or value in existing:
                        continue
                    issues.append(
                        ValidationIssue(
                            table=table,
                            record_id=record.get("id"),
                            field=rel.source_field,
                            message=(
                                f"Referenced record not found: {rel.target_table}.{rel.target_field}={value!r}"
                            ),
                            severity=Severity.ERROR,
                        )
                    )

        if issues:
            logger.warning(f"Found {len(issues)} referential integrity issues")
        return issues

    def get_import_order(self, table_names: list[str]) -> list[str]:
        """Order tables so referenced tables come before the tables that reference them.

        Cycles cannot be satisfied; the back edge is treated as resolved and
        recorded in ``detected_cycles``. Self references are ignored. The
        result is always a permutation of ``table_names``.
        """
        self.detected_cycles = []
        wanted = set(table_names)
        order: list[str] = []
        visited: set[str] = set()
        visiting: set[str] = set()

        def visit(table: str):
            if table in visited:
                return
            visiting.add(table)
            for rel in self._relationships.get(table, []):
                dependency = rel.target_table
                if dependency == table or dependency not in wanted:
                    continue
                if dependency in visiting:
                    logger.warning(f"Circular dependency detected: {table} -> {dependency}")
                    self.detected_cycles.append((table, dependency))
                    continue
                visit(dependency)
            visiting.discard(table)
            visited.add(table)
            order.append(table)

        for name in table_names:
            visit(name)

        return order

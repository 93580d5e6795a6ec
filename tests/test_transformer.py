"""
Tests for DataTransformer in migrations/sqlite_to_postgres/transformer.py

Covers:
- Column type resolution (declared vs detected)
- Row conversion and dropped rows on conversion errors
- Timestamp repair during transformation
- Referential integrity errors
- Detected types falling back to text when values do not fit
- Stopping mid-table
- Writing and loading the transformed file (camelCase keys)
"""

import json

import pytest

from migrations.sqlite_to_postgres.exceptions import MigrationCancelled
from migrations.sqlite_to_postgres.exporter import SQLiteExporter
from migrations.sqlite_to_postgres.models import (
    ColumnInfo,
    ExportResult,
    Severity,
    TableSnapshot,
    TypeName,
)
from migrations.sqlite_to_postgres.stats import ProgressKind
from migrations.sqlite_to_postgres.transformer import TRANSFORM_FILE_PREFIX, DataTransformer, load_transformed


def export_of(*snapshots: TableSnapshot) -> ExportResult:
    return ExportResult(success=True, data={snapshot.name: snapshot for snapshot in snapshots})


def snapshot(name: str, columns: list[tuple[str, str | None]], rows: list[dict]) -> TableSnapshot:
    return TableSnapshot(
        name=name,
        columns=[ColumnInfo(name=col, declared_type=declared) for col, declared in columns],
        rows=rows,
        record_count=len(rows),
    )


class TestResolveColumnTypes:
    def test_declared_types_win(self):
        snap = snapshot("t", [("id", "INTEGER"), ("price", "REAL"), ("flag", "BOOLEAN")], [])
        types = DataTransformer().resolve_column_types(snap)
        assert types == {"id": TypeName.INTEGER, "price": TypeName.DECIMAL, "flag": TypeName.BOOLEAN}

    def test_text_columns_use_detection(self):
        snap = snapshot(
            "t",
            [("id", "INTEGER"), ("meta", "TEXT"), ("title", "TEXT")],
            [{"id": 1, "meta": '{"a": 1}', "title": "x"}, {"id": 2, "meta": "[]", "title": "y"}],
        )
        types = DataTransformer().resolve_column_types(snap)
        assert types["meta"] == TypeName.JSON
        assert types["title"] == TypeName.TEXT

    def test_typeless_key_columns_never_boolean(self):
        snap = snapshot("t", [("id", None), ("team_id", None), ("active", None)], [{"id": 1, "team_id": 0, "active": 1}])
        types = DataTransformer().resolve_column_types(snap)
        assert types["id"] == TypeName.INTEGER
        assert types["team_id"] == TypeName.INTEGER
        assert types["active"] == TypeName.BOOLEAN


class TestTransform:
    @pytest.mark.asyncio
    async def test_converts_rows(self):
        snap = snapshot(
            "articles",
            [("id", "INTEGER"), ("created_at", "DATETIME"), ("published", "BOOLEAN"), ("meta", "JSON")],
            [{"id": 1, "created_at": "2024-01-15 10:30:00", "published": 1, "meta": '{"k": "v"}'}],
        )
        result = await DataTransformer().transform(export_of(snap))

        assert result.success
        record = result.transformed_data["articles"][0]
        assert record == {
            "id": 1,
            "created_at": "2024-01-15T10:30:00.000Z",
            "published": True,
            "meta": {"k": "v"},
        }
        assert result.metadata.total_records == 1
        assert result.metadata.total_tables == 1

    @pytest.mark.asyncio
    async def test_conversion_error_drops_row(self):
        snap = snapshot("scores", [("id", "INTEGER"), ("points", "INTEGER")], [
            {"id": 1, "points": "10"},
            {"id": 2, "points": "ten"},
        ])
        result = await DataTransformer().transform(export_of(snap))

        assert not result.success
        assert [r["id"] for r in result.transformed_data["scores"]] == [1]
        errors = result.metadata.validation_errors
        assert len(errors) == 1
        assert errors[0].record_id == 2
        assert errors[0].field == "points"

    @pytest.mark.asyncio
    async def test_invalid_lifecycle_timestamp_repaired(self):
        snap = snapshot("pages", [("id", "INTEGER"), ("updated_at", "DATETIME")], [{"id": 1, "updated_at": "never"}])
        result = await DataTransformer().transform(export_of(snap))

        assert result.success
        warnings = result.dataset.warnings
        assert len(warnings) == 1
        assert warnings[0].field == "updated_at"
        assert result.transformed_data["pages"][0]["updated_at"].endswith("Z")

    @pytest.mark.asyncio
    async def test_referential_error_reported(self, teams_players_db, tmp_path):
        export = await SQLiteExporter(teams_players_db, output_dir=tmp_path).export(write_file=False)
        result = await DataTransformer().transform(export)

        assert not result.success
        errors = [i for i in result.dataset.issues if i.severity == Severity.ERROR]
        assert len(errors) == 1
        assert errors[0].table == "players"
        assert errors[0].record_id == 2
        assert result.metadata.foreign_keys["players"][0].to_table == "teams"

    @pytest.mark.asyncio
    async def test_empty_table_keeps_column_types(self):
        snap = snapshot("tags", [("id", "INTEGER"), ("label", "VARCHAR(255)")], [])
        result = await DataTransformer().transform(export_of(snap))
        assert result.transformed_data["tags"] == []
        assert result.metadata.column_types["tags"] == {"id": TypeName.INTEGER, "label": TypeName.TEXT}

    @pytest.mark.asyncio
    async def test_progress_reported_per_batch(self):
        events = []
        rows = [{"id": i} for i in range(1, 6)]
        snap = snapshot("t", [("id", "INTEGER")], rows)
        await DataTransformer(batch_size=2, progress_callback=events.append).transform(export_of(snap))
        assert [e.processed for e in events] == [0, 2, 4, 5]

    @pytest.mark.asyncio
    async def test_written_file_round_trips(self, tmp_path):
        snap = snapshot("t", [("id", "INTEGER"), ("meta", "JSON")], [{"id": 1, "meta": "[1, 2]"}])
        transformer = DataTransformer(output_dir=tmp_path)
        result = await transformer.transform(export_of(snap), write_file=True)

        files = list(tmp_path.glob(f"{TRANSFORM_FILE_PREFIX}*.json"))
        assert len(files) == 1
        loaded = load_transformed(files[0])
        assert loaded.transformed_data == result.transformed_data
        assert loaded.dataset.column_types == {"t": {"id": TypeName.INTEGER, "meta": TypeName.JSON}}

    @pytest.mark.asyncio
    async def test_file_uses_camel_case_keys(self, tmp_path):
        snap = snapshot("t", [("id", "INTEGER"), ("label", "TEXT")], [{"id": 1, "label": "a"}])
        await DataTransformer(output_dir=tmp_path).transform(export_of(snap), write_file=True)

        content = json.loads(next(tmp_path.glob(f"{TRANSFORM_FILE_PREFIX}*.json")).read_text())
        assert set(content) == {"success", "transformedData", "metadata", "errors"}
        assert content["transformedData"] == {"t": [{"id": 1, "label": "a"}]}
        metadata = content["metadata"]
        for key in ("transformationDate", "totalRecords", "totalTables", "duration", "validationErrors"):
            assert key in metadata
        assert metadata["totalRecords"] == 1


class TestDetectedTypeFallback:
    @pytest.mark.asyncio
    async def test_slugs_starting_with_a_date_stay_text(self):
        snap = snapshot(
            "articles",
            [("id", "INTEGER"), ("slug", "VARCHAR(255)")],
            [
                {"id": 1, "slug": "2024-01-11-match-report"},
                {"id": 2, "slug": "2024-01-12-transfer-news"},
                {"id": 3, "slug": "2024-01-13-season-preview"},
            ],
        )
        result = await DataTransformer().transform(export_of(snap))

        assert result.success
        assert result.metadata.column_types["articles"]["slug"] == TypeName.TEXT
        assert [r["slug"] for r in result.transformed_data["articles"]] == [
            "2024-01-11-match-report",
            "2024-01-12-transfer-news",
            "2024-01-13-season-preview",
        ]

    @pytest.mark.asyncio
    async def test_mostly_dates_with_one_outlier_keeps_every_row(self):
        snap = snapshot(
            "fixtures",
            [("id", "INTEGER"), ("kickoff", "TEXT")],
            [{"id": 1, "kickoff": "2024-01-11"}, {"id": 2, "kickoff": "2024-01-12"}, {"id": 3, "kickoff": "TBD"}],
        )
        result = await DataTransformer().transform(export_of(snap))

        assert result.success
        assert result.metadata.column_types["fixtures"]["kickoff"] == TypeName.TEXT
        assert len(result.transformed_data["fixtures"]) == 3

    @pytest.mark.asyncio
    async def test_declared_timestamp_still_drops_bad_rows(self):
        snap = snapshot(
            "fixtures",
            [("id", "INTEGER"), ("kickoff", "DATETIME")],
            [{"id": 1, "kickoff": "2024-01-11"}, {"id": 2, "kickoff": "TBD"}],
        )
        result = await DataTransformer().transform(export_of(snap))

        assert not result.success
        assert [r["id"] for r in result.transformed_data["fixtures"]] == [1]


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_inside_large_table(self):
        transformer = DataTransformer(batch_size=2)
        seen = []

        def stop_after_first_batch(event):
            seen.append(event.processed)
            if event.kind == ProgressKind.BATCH_PROCESSED:
                transformer.stop_event.set()

        transformer.progress_callback = stop_after_first_batch
        snap = snapshot("t", [("id", "INTEGER")], [{"id": i} for i in range(1, 11)])

        with pytest.raises(MigrationCancelled):
            await transformer.transform(export_of(snap))
        assert seen == [0, 2]

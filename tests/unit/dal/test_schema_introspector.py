"""Tests for manifest assembly from information_schema rows."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from dal.schema_introspector import PostgresSchemaIntrospector, assemble_manifest

COLUMN_ROWS = [
    {"table_schema": "public", "table_name": "lab_results", "column_name": "id",
     "data_type": "uuid", "is_nullable": "NO"},
    {"table_schema": "public", "table_name": "lab_results", "column_name": "report_id",
     "data_type": "uuid", "is_nullable": "YES"},
    {"table_schema": "public", "table_name": "patient_reports", "column_name": "id",
     "data_type": "uuid", "is_nullable": "NO"},
]

FK_ROWS = [
    {"table_schema": "public", "table_name": "lab_results", "column_name": "report_id",
     "foreign_table_schema": "public", "foreign_table_name": "patient_reports",
     "foreign_column_name": "id"},
    # Duplicated by constraint_column_usage fan-out.
    {"table_schema": "public", "table_name": "lab_results", "column_name": "report_id",
     "foreign_table_schema": "public", "foreign_table_name": "patient_reports",
     "foreign_column_name": "id"},
]


def test_assemble_manifest_groups_columns_and_foreign_keys():
    """Columns keep ordinal order; duplicate FK rows collapse."""
    manifest = assemble_manifest(["public"], COLUMN_ROWS, FK_ROWS, fetched_at=5.0)
    lab = manifest.get_table("public.lab_results")
    assert lab.column_names == ("id", "report_id")
    assert lab.columns[0].nullable is False
    assert lab.columns[1].nullable is True
    assert len(lab.foreign_keys) == 1
    assert lab.foreign_keys[0].ref_table == "public.patient_reports"
    assert manifest.fetched_at == 5.0


def test_assemble_manifest_is_deterministic():
    """Same rows in any order, same snapshot id."""
    first = assemble_manifest(["public"], COLUMN_ROWS, FK_ROWS)
    shuffled = [COLUMN_ROWS[2], COLUMN_ROWS[0], COLUMN_ROWS[1]]
    second = assemble_manifest(["public"], shuffled, FK_ROWS)
    assert first.snapshot_id == second.snapshot_id


@pytest.mark.asyncio
async def test_introspector_queries_the_whitelist_on_the_introspection_pool():
    """Both queries run with the namespace list as the only parameter."""
    conn = MagicMock()
    conn.fetch = AsyncMock(side_effect=[COLUMN_ROWS, FK_ROWS])
    acquire = MagicMock()
    acquire.return_value.__aenter__ = AsyncMock(return_value=conn)
    acquire.return_value.__aexit__ = AsyncMock(return_value=False)
    pools = MagicMock()
    pools.acquire = acquire

    manifest = await PostgresSchemaIntrospector(pools, ["public"]).load_manifest()

    assert manifest.table_names == ("public.lab_results", "public.patient_reports")
    assert conn.fetch.await_count == 2
    for call in conn.fetch.await_args_list:
        assert call.args[1] == ["public"]

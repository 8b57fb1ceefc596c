"""Postgres introspection of whitelisted namespaces into a SchemaManifest."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Iterable, Protocol, Sequence, runtime_checkable

from dal.database import DatabasePools, PoolRole
from schema import ColumnDef, ForeignKeyDef, SchemaManifest, TableDef

logger = logging.getLogger(__name__)

COLUMNS_QUERY = """
    SELECT table_schema, table_name, column_name, data_type, is_nullable
    FROM information_schema.columns
    WHERE table_schema = ANY($1::text[])
    ORDER BY table_schema, table_name, ordinal_position
"""

FOREIGN_KEYS_QUERY = """
    SELECT
        tc.table_schema,
        tc.table_name,
        kcu.column_name,
        ccu.table_schema AS foreign_table_schema,
        ccu.table_name AS foreign_table_name,
        ccu.column_name AS foreign_column_name
    FROM information_schema.table_constraints AS tc
    JOIN information_schema.key_column_usage AS kcu
        ON tc.constraint_name = kcu.constraint_name
        AND tc.table_schema = kcu.table_schema
    JOIN information_schema.constraint_column_usage AS ccu
        ON ccu.constraint_name = tc.constraint_name
        AND ccu.constraint_schema = tc.table_schema
    WHERE tc.constraint_type = 'FOREIGN KEY'
        AND tc.table_schema = ANY($1::text[])
"""


@runtime_checkable
class ManifestSource(Protocol):
    """Anything that can produce a fresh manifest."""

    async def load_manifest(self) -> SchemaManifest:
        """Introspect and return a new manifest."""
        ...


def assemble_manifest(
    namespaces: Sequence[str],
    column_rows: Iterable[Any],
    fk_rows: Iterable[Any],
    fetched_at: float | None = None,
) -> SchemaManifest:
    """Group raw information_schema rows into canonical table definitions."""
    columns: dict[tuple[str, str], list[ColumnDef]] = defaultdict(list)
    for row in column_rows:
        columns[(row["table_schema"], row["table_name"])].append(
            ColumnDef(
                name=row["column_name"],
                data_type=row["data_type"],
                nullable=row["is_nullable"] == "YES",
            )
        )

    foreign_keys: dict[tuple[str, str], list[ForeignKeyDef]] = defaultdict(list)
    for row in fk_rows:
        key = (row["table_schema"], row["table_name"])
        fk = ForeignKeyDef(
            column=row["column_name"],
            ref_table=f"{row['foreign_table_schema']}.{row['foreign_table_name']}",
            ref_column=row["foreign_column_name"],
        )
        # Composite constraints repeat rows through constraint_column_usage.
        if fk not in foreign_keys[key]:
            foreign_keys[key].append(fk)

    tables = [
        TableDef(
            schema_name=schema_name,
            name=table_name,
            columns=tuple(cols),
            foreign_keys=tuple(foreign_keys.get((schema_name, table_name), ())),
        )
        for (schema_name, table_name), cols in columns.items()
    ]
    return SchemaManifest.build(tables, namespaces, fetched_at=fetched_at)


class PostgresSchemaIntrospector:
    """Reads columns, then foreign keys, for the whitelisted schemas."""

    def __init__(self, pools: DatabasePools, namespaces: Sequence[str]) -> None:
        """Initialize with the pool owner and the namespace whitelist."""
        self._pools = pools
        self._namespaces = tuple(namespaces)

    @property
    def namespaces(self) -> tuple[str, ...]:
        """Return the namespace whitelist."""
        return self._namespaces

    async def load_manifest(self) -> SchemaManifest:
        """Run both introspection queries and assemble a manifest."""
        namespaces = list(self._namespaces)
        async with self._pools.acquire(PoolRole.INTROSPECTION) as conn:
            column_rows = await conn.fetch(COLUMNS_QUERY, namespaces)
            fk_rows = await conn.fetch(FOREIGN_KEYS_QUERY, namespaces)
        manifest = assemble_manifest(namespaces, column_rows, fk_rows)
        logger.info(
            "schema_introspected namespaces=%s tables=%d snapshot_id=%s",
            ",".join(namespaces),
            len(manifest.tables),
            manifest.snapshot_id[:12],
        )
        return manifest

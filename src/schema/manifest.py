"""Immutable, content-addressed schema manifest."""

import hashlib
import json
import time
from typing import Iterable, Optional, Tuple

from pydantic import BaseModel, Field

from .table_def import TableDef


def _canonical_payload(tables: Tuple[TableDef, ...], namespaces: Tuple[str, ...]) -> dict:
    return {
        "namespaces": list(namespaces),
        "tables": [
            {
                "schema": table.schema_name,
                "name": table.name,
                "columns": [
                    {"name": c.name, "type": c.data_type, "nullable": c.nullable}
                    for c in table.columns
                ],
                "foreign_keys": [
                    {"column": fk.column, "ref_table": fk.ref_table, "ref_column": fk.ref_column}
                    for fk in table.foreign_keys
                ],
            }
            for table in tables
        ],
    }


def compute_snapshot_id(tables: Tuple[TableDef, ...], namespaces: Tuple[str, ...]) -> str:
    """Hash the canonical serialization. Fetch time is not part of the identity."""
    canonical = _canonical_payload(tables, namespaces)
    encoded = json.dumps(canonical, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class SchemaManifest(BaseModel):
    """Point-in-time description of the whitelisted namespaces.

    Manifests are never mutated. A refresh produces a new instance, and
    two manifests with the same content share a ``snapshot_id``.
    """

    tables: Tuple[TableDef, ...] = Field(default_factory=tuple)
    namespaces: Tuple[str, ...] = Field(default_factory=tuple)
    snapshot_id: str
    fetched_at: float

    model_config = {"frozen": True}

    @classmethod
    def build(
        cls,
        tables: Iterable[TableDef],
        namespaces: Iterable[str],
        fetched_at: Optional[float] = None,
    ) -> "SchemaManifest":
        """Canonically order tables and foreign keys, then hash."""
        ordered = tuple(
            table.model_copy(
                update={
                    "foreign_keys": tuple(
                        sorted(
                            table.foreign_keys,
                            key=lambda fk: (fk.column, fk.ref_table, fk.ref_column),
                        )
                    )
                }
            )
            for table in sorted(tables, key=lambda t: (t.schema_name, t.name))
        )
        ordered_namespaces = tuple(sorted(set(namespaces)))
        return cls(
            tables=ordered,
            namespaces=ordered_namespaces,
            snapshot_id=compute_snapshot_id(ordered, ordered_namespaces),
            fetched_at=time.time() if fetched_at is None else fetched_at,
        )

    def get_table(self, name: str) -> Optional[TableDef]:
        """Look up by ``schema.table`` or, when unambiguous, by bare name."""
        lowered = name.lower()
        matches = [
            t
            for t in self.tables
            if t.qualified_name.lower() == lowered or t.name.lower() == lowered
        ]
        return matches[0] if len(matches) == 1 else None

    @property
    def table_names(self) -> Tuple[str, ...]:
        """Qualified table names in canonical order."""
        return tuple(table.qualified_name for table in self.tables)

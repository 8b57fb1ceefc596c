"""Schema manifest models."""

from .column_def import ColumnDef
from .foreign_key_def import ForeignKeyDef
from .manifest import SchemaManifest, compute_snapshot_id
from .table_def import TableDef

__all__ = ["ColumnDef", "ForeignKeyDef", "SchemaManifest", "TableDef", "compute_snapshot_id"]

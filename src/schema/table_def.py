from typing import Tuple

from pydantic import BaseModel, Field

from .column_def import ColumnDef
from .foreign_key_def import ForeignKeyDef


class TableDef(BaseModel):
    """Canonical representation of one introspected table."""

    schema_name: str
    name: str
    columns: Tuple[ColumnDef, ...] = Field(default_factory=tuple)
    foreign_keys: Tuple[ForeignKeyDef, ...] = Field(default_factory=tuple)

    model_config = {"frozen": True}

    @property
    def qualified_name(self) -> str:
        """Return ``schema.table``."""
        return f"{self.schema_name}.{self.name}"

    @property
    def column_names(self) -> Tuple[str, ...]:
        """Column names in ordinal order."""
        return tuple(column.name for column in self.columns)

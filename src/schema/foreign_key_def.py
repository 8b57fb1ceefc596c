from pydantic import BaseModel


class ForeignKeyDef(BaseModel):
    """Canonical representation of a foreign key constraint.

    ``ref_table`` is schema-qualified (``schema.table``).
    """

    column: str
    ref_table: str
    ref_column: str

    model_config = {"frozen": True}

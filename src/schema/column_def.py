from pydantic import BaseModel


class ColumnDef(BaseModel):
    """One column as reported by information_schema."""

    name: str
    data_type: str
    nullable: bool = True

    model_config = {"frozen": True}

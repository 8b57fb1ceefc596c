"""Data Abstraction Layer (DAL) for SQL generation.

Pools are split by privilege level; every read issued on behalf of the
reasoning engine runs in a read-only transaction.
"""

from dal.database import DatabasePools, DatabaseSettings, PoolRole
from dal.schema_snapshot import SchemaSnapshotCache, SchemaSnapshotSettings

__all__ = [
    "DatabasePools",
    "DatabaseSettings",
    "PoolRole",
    "SchemaSnapshotCache",
    "SchemaSnapshotSettings",
]

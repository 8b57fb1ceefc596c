"""Live Postgres checks for introspection, dry runs and capped reads.

Requires RUN_INTEGRATION_TESTS=1 and DATABASE_URL pointing at a scratch database.
"""

import uuid

import pytest
import pytest_asyncio

from dal.database import DatabasePools, PoolRole
from dal.exploration import ExplorationStore
from dal.plan_inspector import PlanInspector, PlanOutcome
from dal.schema_introspector import PostgresSchemaIntrospector

pytestmark = pytest.mark.integration


@pytest_asyncio.fixture
async def pools():
    db = DatabasePools()
    await db.init()
    table = f"it_lab_{uuid.uuid4().hex[:8]}"
    async with db.acquire(PoolRole.INTROSPECTION) as conn:
        await conn.execute(f"CREATE TABLE public.{table} (id serial PRIMARY KEY, name text)")
        await conn.execute(
            f"INSERT INTO public.{table} (name) SELECT 'n' FROM generate_series(1, 5)"
        )
    db.test_table = table
    try:
        yield db
    finally:
        async with db.acquire(PoolRole.INTROSPECTION) as conn:
            await conn.execute(f"DROP TABLE IF EXISTS public.{table}")
        await db.close()


@pytest.mark.asyncio
async def test_introspection_sees_new_table(pools):
    """The manifest includes freshly created tables and their columns."""
    manifest = await PostgresSchemaIntrospector(pools, ["public"]).load_manifest()
    table = manifest.get_table(pools.test_table)
    assert table is not None
    assert [c.name for c in table.columns] == ["id", "name"]


@pytest.mark.asyncio
async def test_dry_run_accepts_reads_and_flags_writes(pools):
    """EXPLAIN on the read-only pool never executes the statement."""
    inspector = PlanInspector(pools)
    read = await inspector.check(f"SELECT * FROM public.{pools.test_table} LIMIT 5")
    write = await inspector.check(f"DELETE FROM public.{pools.test_table}")
    assert read.outcome is PlanOutcome.READ_ONLY
    assert not write.ok


@pytest.mark.asyncio
async def test_exploratory_read_is_capped(pools):
    """The row cap applies even when the query asks for more."""
    store = ExplorationStore(pools)
    result = await store.run_read(f"SELECT id FROM public.{pools.test_table}", max_rows=2)
    assert len(result.rows) == 2
    assert result.truncated is True

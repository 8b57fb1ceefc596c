"""Connection pools, one per privilege level."""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional

import asyncpg

from common.config.env import get_env_int, get_env_str

logger = logging.getLogger(__name__)


class PoolRole(str, Enum):
    """Privilege level a pool is opened with."""

    INTROSPECTION = "introspection"
    VALIDATOR = "validator"
    EXPLORATION = "exploration"
    AUDIT = "audit"


READ_ONLY_ROLES = frozenset({PoolRole.VALIDATOR, PoolRole.EXPLORATION})


def _default_dsn() -> str:
    url = get_env_str("DATABASE_URL")
    if url:
        return url
    host = get_env_str("DB_HOST", "localhost")
    port = get_env_int("DB_PORT", 5432)
    name = get_env_str("DB_NAME", "healthup")
    user = get_env_str("DB_USER", "healthup_app")
    password = get_env_str("DB_PASS", "")
    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


@dataclass(frozen=True)
class DatabaseSettings:
    """Startup-resolved DSNs and pool sizing."""

    dsns: dict[PoolRole, str] = field(default_factory=dict)
    min_size: int = 1
    max_size: int = 5
    command_timeout: float = 30.0

    @classmethod
    def from_env(cls) -> "DatabaseSettings":
        """Build settings; ``DATABASE_URL_<ROLE>`` overrides the shared DSN per pool."""
        base = _default_dsn()
        dsns = {
            role: get_env_str(f"DATABASE_URL_{role.name}", base) or base for role in PoolRole
        }
        return cls(
            dsns=dsns,
            min_size=get_env_int("DB_POOL_MIN_SIZE", 1) or 1,
            max_size=get_env_int("DB_POOL_MAX_SIZE", 5) or 5,
            command_timeout=float(get_env_int("DB_COMMAND_TIMEOUT_SECONDS", 30) or 30),
        )


class DatabasePools:
    """Owns the asyncpg pools. Created at startup, closed at shutdown."""

    def __init__(self, settings: Optional[DatabaseSettings] = None) -> None:
        """Initialize without connecting."""
        self._settings = settings or DatabaseSettings.from_env()
        self._pools: dict[PoolRole, asyncpg.Pool] = {}

    @property
    def settings(self) -> DatabaseSettings:
        """Return the resolved settings."""
        return self._settings

    async def init(self) -> None:
        """Open every pool. Read-only roles pin ``default_transaction_read_only``."""
        try:
            for role in PoolRole:
                server_settings = {"application_name": f"lab_text2sql_{role.value}"}
                if role in READ_ONLY_ROLES:
                    server_settings["default_transaction_read_only"] = "on"
                self._pools[role] = await asyncpg.create_pool(
                    self._settings.dsns[role],
                    min_size=self._settings.min_size,
                    max_size=self._settings.max_size,
                    command_timeout=self._settings.command_timeout,
                    server_settings=server_settings,
                )
                logger.info("db_pool_open role=%s", role.value)
        except Exception as exc:
            await self.close()
            raise ConnectionError(f"Failed to initialize database pools: {exc}") from exc

    async def close(self) -> None:
        """Close every open pool."""
        pools, self._pools = self._pools, {}
        for role, pool in pools.items():
            await pool.close()
            logger.info("db_pool_closed role=%s", role.value)

    def pool(self, role: PoolRole) -> asyncpg.Pool:
        """Return the pool for ``role``."""
        pool = self._pools.get(role)
        if pool is None:
            raise RuntimeError(f"Database pool '{role.value}' not initialized. Call init() first.")
        return pool

    @contextlib.asynccontextmanager
    async def acquire(self, role: PoolRole) -> AsyncIterator[asyncpg.Connection]:
        """Borrow a connection from the pool for ``role``."""
        async with self.pool(role).acquire() as conn:
            yield conn

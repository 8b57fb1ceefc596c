"""Process-wide shared state, created at startup and torn down at shutdown."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from agent.audit import AuditSink, FanoutAuditSink, LoggingAuditSink, PostgresAuditSink
from agent.context import AliasDictionary, ContextBuilder, MRUTableList
from agent.orchestrator import (
    AgenticOrchestrator,
    LangChainReasoningEngine,
    OrchestratorSettings,
    ReasoningEngine,
)
from agent.tools import ExplorationSource, ToolExecutor, ToolSettings
from agent.validation import QueryValidator
from common.config.env import get_env_bool, safe_env_int
from dal.database import DatabasePools
from dal.exploration import ExplorationStore
from dal.invalidation import (
    INVALIDATION_CHANNEL,
    InvalidationChannel,
    NullInvalidationChannel,
    PostgresInvalidationChannel,
)
from dal.plan_inspector import PlanInspector
from dal.schema_introspector import PostgresSchemaIntrospector
from dal.schema_snapshot import SchemaSnapshotCache, SchemaSnapshotSettings, build_snapshot_cache

logger = logging.getLogger(__name__)

EngineFactory = Callable[[Optional[str]], ReasoningEngine]


@dataclass(frozen=True)
class RuntimeSettings:
    """Wiring switches."""

    invalidation_enabled: bool = True
    audit_db_enabled: bool = True
    exploration_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        """Resolve from environment variables."""
        return cls(
            invalidation_enabled=bool(get_env_bool("SCHEMA_INVALIDATION_ENABLED", True)),
            audit_db_enabled=bool(get_env_bool("SQLGEN_AUDIT_DB_ENABLED", True)),
            exploration_timeout_ms=safe_env_int("AGENTIC_STATEMENT_TIMEOUT_MS", 5000, minimum=1),
        )


class AppRuntime:
    """Owns the snapshot cache, the MRU list and everything a request is built from."""

    def __init__(
        self,
        *,
        snapshot_cache: SchemaSnapshotCache,
        mru: MRUTableList,
        context_builder: ContextBuilder,
        validator: QueryValidator,
        exploration: ExplorationSource,
        audit_sink: AuditSink,
        engine_factory: EngineFactory,
        tool_settings: Optional[ToolSettings] = None,
        orchestrator_settings: Optional[OrchestratorSettings] = None,
        pools: Optional[DatabasePools] = None,
    ) -> None:
        """Wire already-built components; ``create()`` builds them from env."""
        self.snapshot_cache = snapshot_cache
        self.mru = mru
        self.context_builder = context_builder
        self.validator = validator
        self.exploration = exploration
        self.audit_sink = audit_sink
        self.tool_settings = tool_settings or ToolSettings.from_env()
        self.orchestrator_settings = orchestrator_settings or OrchestratorSettings.from_env()
        self._engine_factory = engine_factory
        self._pools = pools
        self.snapshot_cache.add_snapshot_listener(self.mru.on_snapshot_change)

    @classmethod
    def create(cls, settings: Optional[RuntimeSettings] = None) -> "AppRuntime":
        """Build the default Postgres/OpenAI wiring without connecting."""
        resolved = settings or RuntimeSettings.from_env()
        pools = DatabasePools()
        snapshot_settings = SchemaSnapshotSettings.from_env()
        channel: InvalidationChannel = (
            PostgresInvalidationChannel(pools, channel=INVALIDATION_CHANNEL)
            if resolved.invalidation_enabled
            else NullInvalidationChannel()
        )
        cache = build_snapshot_cache(
            PostgresSchemaIntrospector(pools, snapshot_settings.namespaces),
            channel=channel,
            settings=snapshot_settings,
        )
        logging_sink = LoggingAuditSink()
        audit_sink: AuditSink = (
            FanoutAuditSink([logging_sink, PostgresAuditSink(pools)])
            if resolved.audit_db_enabled
            else logging_sink
        )
        return cls(
            snapshot_cache=cache,
            mru=MRUTableList(),
            context_builder=ContextBuilder(aliases=AliasDictionary.load()),
            validator=QueryValidator(PlanInspector(pools)),
            exploration=ExplorationStore(
                pools, statement_timeout_ms=resolved.exploration_timeout_ms
            ),
            audit_sink=audit_sink,
            engine_factory=LangChainReasoningEngine.from_env,
            pools=pools,
        )

    async def start(self) -> None:
        """Open pools, subscribe to invalidations and warm the cache.

        Raises:
            ConnectionError: If the pools cannot be opened.
        """
        if self._pools is not None:
            await self._pools.init()
        await self.snapshot_cache.start()
        manifest = self.snapshot_cache.current
        logger.info(
            "runtime_started snapshot_id=%s subscription=%s",
            manifest.snapshot_id if manifest else None,
            self.snapshot_cache.subscription_status.value,
        )

    async def shutdown(self) -> None:
        """Stop background work and close pools."""
        await self.snapshot_cache.close()
        if self._pools is not None:
            await self._pools.close()
        logger.info("runtime_stopped")

    def new_engine(self, model: Optional[str] = None) -> ReasoningEngine:
        """Build an engine for one request."""
        return self._engine_factory(model)

    def new_orchestrator(self, engine: ReasoningEngine) -> AgenticOrchestrator:
        """Build a fresh orchestrator; one per request."""
        tools = ToolExecutor(self.exploration, self.validator, self.tool_settings)
        return AgenticOrchestrator(engine, tools, self.validator, self.orchestrator_settings)

"""Cross-process schema invalidation over Postgres LISTEN/NOTIFY."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from enum import Enum
from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

import asyncpg
from opentelemetry import trace

from common.observability.metrics import sqlgen_metrics
from dal.database import DatabasePools, PoolRole

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

INVALIDATION_CHANNEL = "invalidate_schema"

InvalidationHandler = Callable[[dict], Awaitable[None]]


class PropagationStatus(str, Enum):
    """How far an invalidation reached."""

    BROADCAST = "broadcast"
    DEGRADED = "degraded"


@runtime_checkable
class InvalidationChannel(Protocol):
    """Broadcast channel for schema invalidation events."""

    async def publish(self, reason: str) -> PropagationStatus:
        """Fire-and-forget broadcast. Never raises."""
        ...

    async def subscribe(self, handler: InvalidationHandler) -> PropagationStatus:
        """Start delivering events from other processes to ``handler``. Never raises."""
        ...

    async def close(self) -> None:
        """Stop listening and release resources."""
        ...


def _record_degraded(operation: str, exc: BaseException) -> PropagationStatus:
    logger.warning(
        "schema_invalidation_degraded op=%s error=%s; invalidation is local to this process",
        operation,
        type(exc).__name__,
    )
    sqlgen_metrics.add_counter(
        "sqlgen.schema.invalidation_degraded_total",
        attributes={"op": operation},
        description="Invalidation publish or subscribe failures",
    )
    return PropagationStatus.DEGRADED


class PostgresInvalidationChannel:
    """NOTIFY on publish, a dedicated LISTEN connection for subscribe.

    Events carry the publishing instance id so a process does not react
    to its own broadcast.
    """

    def __init__(
        self,
        pools: DatabasePools,
        *,
        channel: str = INVALIDATION_CHANNEL,
        connect: Optional[Callable[..., Awaitable[asyncpg.Connection]]] = None,
    ) -> None:
        """Initialize without connecting."""
        self._pools = pools
        self._channel = channel
        self._connect = connect or asyncpg.connect
        self._instance_id = uuid.uuid4().hex
        self._listener_conn: Optional[asyncpg.Connection] = None
        self._handler: Optional[InvalidationHandler] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def instance_id(self) -> str:
        """Return this process's publisher id."""
        return self._instance_id

    async def publish(self, reason: str) -> PropagationStatus:
        """Send ``pg_notify``. A failure degrades to local-only invalidation."""
        payload = json.dumps({"origin": self._instance_id, "reason": reason})
        with tracer.start_as_current_span("schema.invalidation.publish") as span:
            span.set_attribute("invalidation.channel", self._channel)
            try:
                async with self._pools.acquire(PoolRole.INTROSPECTION) as conn:
                    await conn.execute("SELECT pg_notify($1, $2)", self._channel, payload)
            except Exception as exc:
                span.set_attribute("invalidation.degraded", True)
                return _record_degraded("publish", exc)
        logger.info("schema_invalidation_published channel=%s reason=%s", self._channel, reason)
        return PropagationStatus.BROADCAST

    async def subscribe(self, handler: InvalidationHandler) -> PropagationStatus:
        """Open the LISTEN connection and register ``handler``."""
        self._handler = handler
        try:
            dsn = self._pools.settings.dsns[PoolRole.INTROSPECTION]
            self._listener_conn = await self._connect(dsn)
            await self._listener_conn.add_listener(self._channel, self._on_notification)
        except Exception as exc:
            await self._release_listener()
            return _record_degraded("subscribe", exc)
        logger.info("schema_invalidation_listening channel=%s", self._channel)
        return PropagationStatus.BROADCAST

    def _on_notification(self, connection, pid, channel, payload) -> None:
        try:
            event = json.loads(payload) if payload else {}
        except ValueError:
            event = {"reason": str(payload)}
        if not isinstance(event, dict):
            event = {"reason": str(event)}
        if event.get("origin") == self._instance_id or self._handler is None:
            return
        logger.info("schema_invalidation_received channel=%s pid=%s", channel, pid)
        task = asyncio.get_running_loop().create_task(self._handler(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _release_listener(self) -> None:
        conn, self._listener_conn = self._listener_conn, None
        if conn is None:
            return
        try:
            await conn.remove_listener(self._channel, self._on_notification)
        except Exception as exc:
            logger.debug("schema_invalidation_unlisten_failed error=%s", exc)
        try:
            await conn.close()
        except Exception as exc:
            logger.warning("schema_invalidation_listener_close_failed error=%s", exc)

    async def close(self) -> None:
        """UNLISTEN and close the dedicated connection."""
        await self._release_listener()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


class NullInvalidationChannel:
    """Single-instance mode: nothing is broadcast and nothing is received."""

    async def publish(self, reason: str) -> PropagationStatus:
        """Log and report local-only propagation."""
        logger.info("schema_invalidation_local_only reason=%s", reason)
        return PropagationStatus.DEGRADED

    async def subscribe(self, handler: InvalidationHandler) -> PropagationStatus:
        """Nothing to subscribe to."""
        return PropagationStatus.DEGRADED

    async def close(self) -> None:
        """Nothing to release."""
        return None

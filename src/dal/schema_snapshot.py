"""Process-wide schema snapshot cache with stale-while-refresh reads."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from opentelemetry import trace

from common.config.env import get_env_int, get_env_list, is_production
from common.errors import SchemaUnavailableError
from common.observability.metrics import sqlgen_metrics
from dal.invalidation import InvalidationChannel, NullInvalidationChannel, PropagationStatus
from dal.schema_introspector import ManifestSource
from schema import SchemaManifest

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SnapshotListener = Callable[[Optional[SchemaManifest], SchemaManifest], None]

_DEV_TTL_MS = 60_000
_PROD_TTL_MS = 300_000


@dataclass(frozen=True)
class SchemaSnapshotSettings:
    """TTL and namespace whitelist for the snapshot cache."""

    ttl_seconds: float
    namespaces: tuple[str, ...]

    @classmethod
    def from_env(cls) -> "SchemaSnapshotSettings":
        """Resolve from SQL_SCHEMA_CACHE_TTL_MS and SCHEMA_WHITELIST."""
        default_ms = _PROD_TTL_MS if is_production() else _DEV_TTL_MS
        try:
            ttl_ms = get_env_int("SQL_SCHEMA_CACHE_TTL_MS", default_ms)
        except ValueError:
            ttl_ms = default_ms
        namespaces = get_env_list("SCHEMA_WHITELIST", ["public"]) or ["public"]
        return cls(ttl_seconds=max(0, ttl_ms or 0) / 1000.0, namespaces=tuple(namespaces))


@dataclass(frozen=True)
class BustResult:
    """Outcome of an operator-triggered invalidation."""

    manifest: SchemaManifest
    propagation: PropagationStatus


class SchemaSnapshotCache:
    """Holds the current manifest and replaces it wholesale on refresh.

    Readers never wait on a refresh once a manifest exists. Stale reads
    schedule a single background refresh and return the old manifest.
    """

    def __init__(
        self,
        source: ManifestSource,
        *,
        channel: Optional[InvalidationChannel] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize empty; the first read or ``start()`` builds a manifest."""
        self._source = source
        self._channel: InvalidationChannel = channel or NullInvalidationChannel()
        self._ttl_seconds = (
            SchemaSnapshotSettings.from_env().ttl_seconds if ttl_seconds is None else ttl_seconds
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._manifest: Optional[SchemaManifest] = None
        self._loaded_at = 0.0
        self._refresh_lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task] = None
        self._listeners: list[SnapshotListener] = []
        self._subscription = PropagationStatus.DEGRADED

    @property
    def current(self) -> Optional[SchemaManifest]:
        """Return the manifest without triggering anything."""
        with self._lock:
            return self._manifest

    @property
    def subscription_status(self) -> PropagationStatus:
        """Whether this process receives broadcasts from others."""
        return self._subscription

    def add_snapshot_listener(self, listener: SnapshotListener) -> None:
        """Call ``listener(previous, current)`` whenever the snapshot id changes."""
        self._listeners.append(listener)

    def is_stale(self) -> bool:
        """True when the manifest is missing or older than the TTL."""
        with self._lock:
            if self._manifest is None:
                return True
            return (self._clock() - self._loaded_at) >= self._ttl_seconds

    async def get_current(self) -> SchemaManifest:
        """Return the current manifest.

        Only a cold start waits on introspection. A stale manifest is
        served as-is while one background refresh runs.
        """
        manifest = self.current
        if manifest is None:
            try:
                return await self._cold_start()
            except Exception as exc:
                raise SchemaUnavailableError(
                    "Database schema is not available yet. Try again shortly."
                ) from exc
        if self.is_stale():
            self._schedule_refresh()
        return manifest

    def _schedule_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.get_running_loop().create_task(self._background_refresh())

    async def _background_refresh(self) -> None:
        try:
            await self.force_refresh(reason="ttl")
        except Exception as exc:
            logger.warning(
                "schema_snapshot_refresh_failed reason=ttl error=%s; keeping previous snapshot",
                exc,
            )
            sqlgen_metrics.add_counter(
                "sqlgen.schema.refresh_failures_total",
                attributes={"reason": "ttl"},
                description="Schema refreshes that kept the previous snapshot",
            )

    async def _cold_start(self) -> SchemaManifest:
        async with self._refresh_lock:
            # Readers queued behind the first build reuse its result.
            manifest = self.current
            if manifest is not None:
                return manifest
            return await self._load_and_swap("cold_start")

    async def force_refresh(self, reason: str = "manual") -> SchemaManifest:
        """Introspect now and swap in the result. Raises on introspection failure."""
        async with self._refresh_lock:
            return await self._load_and_swap(reason)

    async def _load_and_swap(self, reason: str) -> SchemaManifest:
        with tracer.start_as_current_span("schema.snapshot.refresh") as span:
            span.set_attribute("schema.refresh.reason", reason)
            started = time.monotonic()
            manifest = await self._source.load_manifest()
            self._swap(manifest)
            duration_ms = (time.monotonic() - started) * 1000.0
            span.set_attribute("schema.snapshot_id", manifest.snapshot_id)
            span.set_attribute("schema.tables", len(manifest.tables))
        sqlgen_metrics.record_histogram(
            "sqlgen.schema.refresh_duration_ms",
            duration_ms,
            attributes={"reason": reason},
            description="Schema introspection latency",
        )
        return manifest

    def _swap(self, manifest: SchemaManifest) -> None:
        with self._lock:
            previous = self._manifest
            self._manifest = manifest
            self._loaded_at = self._clock()
        if previous is not None and previous.snapshot_id == manifest.snapshot_id:
            logger.debug("schema_snapshot_unchanged snapshot_id=%s", manifest.snapshot_id[:12])
            return
        logger.info(
            "schema_snapshot_changed previous=%s current=%s tables=%d",
            previous.snapshot_id[:12] if previous else "none",
            manifest.snapshot_id[:12],
            len(manifest.tables),
        )
        for listener in list(self._listeners):
            listener(previous, manifest)

    async def bust(self, reason: str = "admin") -> BustResult:
        """Refresh locally, then broadcast. Publishing never blocks on subscribers."""
        manifest = await self.force_refresh(reason=reason)
        propagation = await self._channel.publish(reason)
        return BustResult(manifest=manifest, propagation=propagation)

    async def _on_invalidation(self, event: dict) -> None:
        try:
            await self.force_refresh(reason="broadcast")
        except Exception as exc:
            logger.warning("schema_snapshot_refresh_failed reason=broadcast error=%s", exc)

    async def start(self) -> None:
        """Subscribe to broadcasts and warm the cache. Neither step is fatal."""
        self._subscription = await self._channel.subscribe(self._on_invalidation)
        try:
            await self.force_refresh(reason="warmup")
        except Exception as exc:
            logger.warning("schema_snapshot_warmup_failed error=%s", exc)

    async def close(self) -> None:
        """Stop the background refresh and the broadcast subscription."""
        task, self._refresh_task = self._refresh_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._channel.close()


def build_snapshot_cache(
    source: ManifestSource,
    channel: Optional[InvalidationChannel] = None,
    settings: Optional[SchemaSnapshotSettings] = None,
) -> SchemaSnapshotCache:
    """Construct a cache from resolved settings."""
    resolved = settings or SchemaSnapshotSettings.from_env()
    return SchemaSnapshotCache(source, channel=channel, ttl_seconds=resolved.ttl_seconds)


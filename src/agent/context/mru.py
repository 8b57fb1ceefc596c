"""Process-wide most-recently-used table list."""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Optional

from common.config.env import safe_env_int
from schema import SchemaManifest

logger = logging.getLogger(__name__)

DEFAULT_MRU_SIZE = 50


class MRUTableList:
    """Bounded ordered set of table names; the most recent entry is last.

    Every update builds a new tuple and replaces the reference, so a reader
    sees either the list before the update or the list after it.
    """

    def __init__(self, max_size: Optional[int] = None) -> None:
        """Initialize empty."""
        if max_size is None:
            max_size = safe_env_int("SQLGEN_MRU_SIZE", DEFAULT_MRU_SIZE, minimum=1)
        self._max_size = max(1, int(max_size))
        self._lock = threading.Lock()
        self._tables: tuple[str, ...] = ()
        self._snapshot_id: Optional[str] = None

    @property
    def max_size(self) -> int:
        """Return the capacity."""
        return self._max_size

    def snapshot(self) -> tuple[str, ...]:
        """Return the current list, oldest first."""
        return self._tables

    def rank(self, table: str, snapshot: Optional[tuple[str, ...]] = None) -> int:
        """Return the 1-based position (higher is more recent), or 0 when absent."""
        tables = self._tables if snapshot is None else snapshot
        try:
            return tables.index(table) + 1
        except ValueError:
            return 0

    def touch(self, tables: Iterable[str], snapshot_id: Optional[str] = None) -> None:
        """Move ``tables`` to the recent end, in the order given.

        A ``snapshot_id`` other than the one the list was last reset for is
        ignored, so a build that raced a schema swap cannot reseed stale names.
        """
        incoming = [t for t in dict.fromkeys(tables) if t]
        if not incoming:
            return
        with self._lock:
            if snapshot_id is not None and self._snapshot_id not in (None, snapshot_id):
                return
            kept = [t for t in self._tables if t not in incoming]
            self._tables = tuple((kept + incoming)[-self._max_size :])

    def reset(self) -> None:
        """Forget everything."""
        with self._lock:
            self._tables = ()

    def on_snapshot_change(
        self, previous: Optional[SchemaManifest], current: SchemaManifest
    ) -> None:
        """Snapshot listener: names from an older schema are no longer trustworthy."""
        with self._lock:
            self._tables = ()
            self._snapshot_id = current.snapshot_id
        logger.info("mru_reset snapshot_id=%s", current.snapshot_id[:12])

    def __len__(self) -> int:
        """Return number of entries."""
        return len(self._tables)

"""Durable logical-id -> event-id mapping with a short-lived write cache.

Two tiers:
- an in-process map mirrored to a ``MappingBackend`` (JSON file or SQLite),
- a ``RecentWriteCache`` holding the latest writes for a few minutes.

The in-process map is authoritative for the life of the process. A backend
write failure is logged and swallowed so that a full disk or a read-only
volume degrades durability instead of failing the request. ``reload()`` pulls
the durable tier back in wholesale; it narrows, but does not close, the
staleness window between instances sharing one backend (last writer wins).
"""

from __future__ import annotations

import abc
import json
import logging
import os
import sqlite3
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from calbridge.config import DEFAULT_CACHE_TTL_SECONDS, MappingConfig

logger = logging.getLogger(__name__)


class MappingPersistenceError(Exception):
    """Raised by a backend when the durable tier cannot be read or written."""


@dataclass(frozen=True)
class Mapping:
    logical_id: str
    event_id: str
    updated_at: datetime


class MappingBackend(abc.ABC):
    """Durable tier behind the mapping store."""

    @abc.abstractmethod
    def load(self) -> dict[str, Mapping]:
        """Return every stored mapping. A missing store is an empty mapping set."""
        ...

    @abc.abstractmethod
    def save(self, mappings: dict[str, Mapping]) -> None:
        """Persist *mappings* as the complete durable state."""
        ...

    def close(self) -> None:
        """Release backend resources."""


class JsonFileBackend(MappingBackend):
    """Flat JSON object ``{logical_id: event_id}`` rewritten on every mutation."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def load(self) -> dict[str, Mapping]:
        try:
            raw_text = self.path.read_text()
            modified = datetime.fromtimestamp(self.path.stat().st_mtime, tz=UTC)
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise MappingPersistenceError(f"Cannot read mapping file {self.path}: {exc}") from exc

        if not raw_text.strip():
            return {}
        try:
            payload = json.loads(raw_text)
        except json.JSONDecodeError as exc:
            raise MappingPersistenceError(
                f"Mapping file {self.path} is not valid JSON: {exc.msg}"
            ) from exc
        if not isinstance(payload, dict):
            raise MappingPersistenceError(f"Mapping file {self.path} must hold a JSON object")

        mappings: dict[str, Mapping] = {}
        for logical_id, event_id in payload.items():
            if not isinstance(event_id, str) or not event_id:
                logger.warning("Skipping malformed mapping entry %r -> %r", logical_id, event_id)
                continue
            mappings[str(logical_id)] = Mapping(str(logical_id), event_id, modified)
        return mappings

    def save(self, mappings: dict[str, Mapping]) -> None:
        payload = {logical_id: mapping.event_id for logical_id, mapping in mappings.items()}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            try:
                with os.fdopen(fd, "w") as handle:
                    json.dump(payload, handle, indent=2, sort_keys=True)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise MappingPersistenceError(f"Cannot write mapping file {self.path}: {exc}") from exc


class SqliteBackend(MappingBackend):
    """Embedded SQLite key-value table keyed by logical id."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self.conn: sqlite3.Connection | None = None

    def _connect(self) -> sqlite3.Connection:
        if self.conn is None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self.conn = sqlite3.connect(str(self.path))
                self.conn.row_factory = sqlite3.Row
                self.conn.execute("""
                    CREATE TABLE IF NOT EXISTS event_mappings (
                        logical_id TEXT PRIMARY KEY,
                        event_id TEXT NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                self.conn.commit()
            except (OSError, sqlite3.Error) as exc:
                self.conn = None
                raise MappingPersistenceError(
                    f"Cannot open mapping database {self.path}: {exc}"
                ) from exc
        return self.conn

    def load(self) -> dict[str, Mapping]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT logical_id, event_id, updated_at FROM event_mappings"
            ).fetchall()
        except sqlite3.Error as exc:
            raise MappingPersistenceError(f"Cannot read mapping database: {exc}") from exc
        return {
            row["logical_id"]: Mapping(
                row["logical_id"],
                row["event_id"],
                datetime.fromtimestamp(row["updated_at"], tz=UTC),
            )
            for row in rows
        }

    def save(self, mappings: dict[str, Mapping]) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.executemany(
                    """
                    INSERT INTO event_mappings (logical_id, event_id, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT (logical_id) DO UPDATE
                        SET event_id = excluded.event_id,
                            updated_at = excluded.updated_at
                    """,
                    [
                        (m.logical_id, m.event_id, m.updated_at.timestamp())
                        for m in mappings.values()
                    ],
                )
                stored = {row[0] for row in conn.execute("SELECT logical_id FROM event_mappings")}
                stale = stored - mappings.keys()
                conn.executemany(
                    "DELETE FROM event_mappings WHERE logical_id = ?",
                    [(logical_id,) for logical_id in stale],
                )
        except sqlite3.Error as exc:
            raise MappingPersistenceError(f"Cannot write mapping database: {exc}") from exc

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None


class RecentWriteCache:
    """Time-boxed mirror of the latest writes; expiry is per entry."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    def get(self, logical_id: str) -> str | None:
        entry = self._entries.get(logical_id)
        if entry is None:
            return None
        event_id, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[logical_id]
            return None
        return event_id

    def set(self, logical_id: str, event_id: str) -> None:
        if self._ttl_seconds <= 0:
            return
        self._entries[logical_id] = (event_id, self._clock() + self._ttl_seconds)

    def discard(self, logical_id: str) -> None:
        self._entries.pop(logical_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for _, expires_at in self._entries.values() if expires_at > now)


class MappingStore:
    """Logical id -> counterpart id repository used by the reconciler.

    ``get``/``put``/``remove``/``reload`` form the repository contract; the
    ``get_recent``/``get_durable`` split lets the reconciler treat each tier as
    its own lookup strategy.
    """

    def __init__(
        self,
        backend: MappingBackend,
        *,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._cache = RecentWriteCache(cache_ttl_seconds, clock=clock)
        self._mappings: dict[str, Mapping] = {}
        # Keys changed in memory whose durable write has not succeeded yet.
        self._unsaved: set[str] = set()
        self.reload()

    @property
    def backend(self) -> MappingBackend:
        return self._backend

    def get_recent(self, logical_id: str) -> str | None:
        return self._cache.get(logical_id)

    def get_durable(self, logical_id: str) -> str | None:
        mapping = self._mappings.get(logical_id)
        return mapping.event_id if mapping is not None else None

    def get(self, logical_id: str) -> str | None:
        return self.get_recent(logical_id) or self.get_durable(logical_id)

    def find_logical_id(self, event_id: str) -> str | None:
        """Reverse lookup used when a calendar change carries no metadata."""
        for mapping in self._mappings.values():
            if mapping.event_id == event_id:
                return mapping.logical_id
        return None

    def put(self, logical_id: str, event_id: str) -> Mapping:
        mapping = Mapping(logical_id, event_id, datetime.now(UTC))
        previous = self._mappings.get(logical_id)
        self._mappings[logical_id] = mapping
        if previous is not None and previous.event_id != event_id:
            logger.warning(
                "Replacing mapping %s: %s -> %s", logical_id, previous.event_id, event_id
            )
        self._persist(logical_id)
        self._cache.set(logical_id, event_id)
        return mapping

    def remove(self, logical_id: str) -> bool:
        self._cache.discard(logical_id)
        removed = self._mappings.pop(logical_id, None)
        if removed is None:
            return False
        self._persist(logical_id)
        logger.info("Removed mapping %s -> %s", logical_id, removed.event_id)
        return True

    def clear(self) -> int:
        count = len(self._mappings)
        removed = list(self._mappings)
        self._mappings.clear()
        self._cache.clear()
        self._persist(*removed)
        logger.info("Cleared %d mapping(s)", count)
        return count

    def reload(self) -> int:
        """Re-read the durable tier wholesale; read failures keep current state.

        Changes whose durable write failed are laid back over the loaded data
        and written again, so a broken backend never loses an in-memory mapping.
        """
        try:
            loaded = self._backend.load()
        except MappingPersistenceError:
            logger.exception("Failed to reload mappings; keeping in-memory state")
            return len(self._mappings)
        mappings = dict(loaded)
        for logical_id in self._unsaved:
            current = self._mappings.get(logical_id)
            if current is None:
                mappings.pop(logical_id, None)
            else:
                mappings[logical_id] = current
        self._mappings = mappings
        logger.debug("Loaded %d mapping(s) from durable store", len(loaded))
        if self._unsaved:
            logger.info("Re-applying %d unsaved mapping change(s)", len(self._unsaved))
            self._persist()
        return len(mappings)

    def items(self) -> list[Mapping]:
        return sorted(self._mappings.values(), key=lambda m: m.logical_id)

    def count(self) -> int:
        return len(self._mappings)

    def __contains__(self, logical_id: object) -> bool:
        return logical_id in self._mappings

    def close(self) -> None:
        self._backend.close()

    def _persist(self, *logical_ids: str) -> None:
        try:
            self._backend.save(self._mappings)
        except MappingPersistenceError:
            self._unsaved.update(logical_ids)
            logger.exception(
                "Durable mapping write failed; in-memory mapping stays authoritative"
            )
        else:
            self._unsaved.clear()


def build_mapping_store(config: MappingConfig) -> MappingStore:
    """Create the store for the configured backend."""
    backend: MappingBackend
    if config.backend == "sqlite":
        backend = SqliteBackend(config.path)
    else:
        backend = JsonFileBackend(config.path)
    return MappingStore(backend, cache_ttl_seconds=config.cache_ttl_seconds)

# FILE: qx7/storage.py
"""
Redundant client-side storage for the visitor id.

  - StorageBackend adapters, one per tier:
      localStorage   -> KeyValueBackend          (durable key/value area)
      sessionStorage -> SessionBackend           (per-session key/value area)
      indexedDB      -> VersionedDatabaseBackend (SQLite file, schema v2)
      cookies        -> CookieBackend            (document cookie jar)
      serviceWorker  -> WorkerBackend            (background worker channel)

  - StorageOrchestrator:
      writes a StorageRecord to every selected tier concurrently and reads
      tiers sequentially in fixed priority order, returning the first valid
      unexpired id.

Design constraints:

  - Independent failure:
      one tier failing never prevents the others from being written or read.
      A write succeeds iff at least one tier accepted the record.

  - Demotion:
      the versioned database is dropped from the active set, for the life of
      the orchestrator, the first time it raises. Other tiers are retried on
      every call.

  - Lazy expiry:
      each tier checks expiry when read. An expired record is purged (best
      effort) and reported as a miss, never returned.

  - No migration:
      the database is opened at a fixed schema version. Older files are
      treated as empty on read and rejected on write; newer files are errors.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
from abc import ABC, abstractmethod
from contextlib import closing
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Sequence, Tuple, Type
from urllib.parse import quote, unquote

from .browser import (
    WORKER_CLEAR,
    WORKER_GET,
    WORKER_STORE,
    BrowsingContext,
    Clock,
    CookieJar,
    StorageArea,
    WorkerChannel,
    http_date,
    now_ms,
)
from .errors import (
    BackendUnavailableError,
    ErrorKind,
    SchemaVersionError,
    StorageBackendError,
)
from .validator import is_valid_identifier

logger = logging.getLogger(__name__)

# ------------------------------
# Constants
# ------------------------------

QX7_ID_KEY = "zkx_qx7_id"
BACKUP_KEYS: Tuple[str, ...] = ("qx7_id_backup", "session_data")
META_SUFFIX = "_meta"
EXPIRES_SUFFIX = "_expires"

RECORD_VERSION = "2.0"
DEFAULT_TTL_MS = 365 * 24 * 60 * 60 * 1000

DB_SCHEMA_VERSION = 2
DB_METADATA_KEY = "current_qx7"

_PROBE_KEY = "__qx7_probe__"


class BackendKind(str, Enum):
    LOCAL = "localStorage"
    SESSION = "sessionStorage"
    DATABASE = "indexedDB"
    COOKIES = "cookies"
    WORKER = "serviceWorker"


#: Fixed read priority, most durable first.
READ_ORDER: Tuple[BackendKind, ...] = (
    BackendKind.LOCAL,
    BackendKind.SESSION,
    BackendKind.DATABASE,
    BackendKind.COOKIES,
    BackendKind.WORKER,
)

#: Tiers probed by storage_health().
HEALTH_KINDS: Tuple[BackendKind, ...] = (
    BackendKind.LOCAL,
    BackendKind.SESSION,
    BackendKind.DATABASE,
)


# ------------------------------
# Data models
# ------------------------------

@dataclass(frozen=True)
class StorageRecord:
    """
    One persisted identity.

    timestamp and ttl are milliseconds; the record expires at
    timestamp + ttl. Tiers that cannot hold every field keep a projection
    (the cookie keeps "id|timestamp|version").
    """

    id: str
    timestamp: int
    ttl: int = DEFAULT_TTL_MS
    version: str = RECORD_VERSION

    @property
    def expires_at(self) -> int:
        return self.timestamp + self.ttl

    def is_expired(self, now: int) -> bool:
        return now > self.expires_at

    def meta(self) -> Dict[str, object]:
        return {"timestamp": self.timestamp, "ttl": self.ttl, "version": self.version}


@dataclass(frozen=True)
class WriteOutcome:
    kind: BackendKind
    ok: bool
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class WriteReport:
    """
    Result of one redundant write.

    `error_kind` is set when the write was refused before fan-out
    (invalid id, no selectable tier).
    """

    qx7_id: str
    outcomes: Tuple[WriteOutcome, ...] = ()
    error_kind: Optional[ErrorKind] = None

    @property
    def ok(self) -> bool:
        return any(o.ok for o in self.outcomes)

    @property
    def written(self) -> Tuple[BackendKind, ...]:
        return tuple(o.kind for o in self.outcomes if o.ok)

    @property
    def failed(self) -> Tuple[BackendKind, ...]:
        return tuple(o.kind for o in self.outcomes if not o.ok)


def _parse_meta(raw: Optional[str]) -> Optional[Dict[str, object]]:
    if not raw:
        return None
    try:
        doc = json.loads(raw)
    except ValueError:
        return None
    return doc if isinstance(doc, dict) else None


def _meta_expired(meta: Optional[Dict[str, object]], now: int) -> bool:
    if not meta:
        return False
    try:
        expires_at = int(meta["timestamp"]) + int(meta["ttl"])
    except (KeyError, TypeError, ValueError):
        return False
    return now > expires_at


# ------------------------------
# Abstract interface + registry
# ------------------------------

_REGISTRY: Dict[BackendKind, Type["StorageBackend"]] = {}


def register_backend(cls: Type["StorageBackend"]) -> Type["StorageBackend"]:
    _REGISTRY[cls.kind] = cls
    return cls


def backend_class(kind: BackendKind) -> Type["StorageBackend"]:
    return _REGISTRY[BackendKind(kind)]


class StorageBackend(ABC):
    """
    One storage tier.

    Adapters raise on failure; catching, recording and demotion are the
    orchestrator's job.
    """

    kind: ClassVar[BackendKind]
    #: Remove this tier from the active set the first time it raises.
    demote_on_error: ClassVar[bool] = False

    @classmethod
    @abstractmethod
    def from_context(cls, context: BrowsingContext, *, clock: Clock) -> Optional["StorageBackend"]:
        """
        Build the adapter for `context`, or None when the context lacks the tier.
        """

    @abstractmethod
    async def write(self, record: StorageRecord) -> None:
        """
        Persist `record`. Raises StorageBackendError (or the underlying
        error) when the tier did not accept it.
        """

    @abstractmethod
    async def read(self) -> Optional[str]:
        """
        Return the stored id, or None when absent or expired.
        """

    async def probe(self) -> bool:
        """Health check; by default a tier is healthy when it holds an id."""
        return (await self.read()) is not None


# ------------------------------
# Key/value tiers
# ------------------------------

@register_backend
class KeyValueBackend(StorageBackend):
    """
    Durable key/value tier.

    Layout:
      <key>           id
      <backup keys>   id (legacy readers)
      <key>_meta      JSON {timestamp, ttl, version}
      <key>_expires   expiry in epoch ms
    """

    kind = BackendKind.LOCAL

    def __init__(
        self,
        area: StorageArea,
        *,
        key: str = QX7_ID_KEY,
        backup_keys: Sequence[str] = BACKUP_KEYS,
        clock: Clock = now_ms,
    ) -> None:
        self.area = area
        self.key = key
        self.backup_keys = tuple(backup_keys)
        self._clock = clock

    @classmethod
    def from_context(cls, context: BrowsingContext, *, clock: Clock) -> "KeyValueBackend":
        return cls(context.local_storage, clock=clock)

    async def write(self, record: StorageRecord) -> None:
        self.area.set_item(self.key, record.id)
        for backup in self.backup_keys:
            self.area.set_item(backup, record.id)
        self.area.set_item(self.key + META_SUFFIX, json.dumps(record.meta()))
        self.area.set_item(self.key + EXPIRES_SUFFIX, str(record.expires_at))

    async def read(self) -> Optional[str]:
        value = self.area.get_item(self.key)
        if not value:
            return None
        expires = self.area.get_item(self.key + EXPIRES_SUFFIX)
        if expires:
            try:
                expired = self._clock() > int(expires)
            except ValueError:
                expired = False
            if expired:
                self._purge()
                return None
        return value

    def _purge(self) -> None:
        for k in (self.key, self.key + META_SUFFIX, self.key + EXPIRES_SUFFIX, *self.backup_keys):
            try:
                self.area.remove_item(k)
            except Exception:
                logger.debug("purge of %s failed", k, exc_info=True)

    async def probe(self) -> bool:
        self.area.set_item(_PROBE_KEY, "1")
        self.area.remove_item(_PROBE_KEY)
        return True


@register_backend
class SessionBackend(StorageBackend):
    """Session tier: the id plus its meta JSON."""

    kind = BackendKind.SESSION

    def __init__(self, area: StorageArea, *, key: str = QX7_ID_KEY, clock: Clock = now_ms) -> None:
        self.area = area
        self.key = key
        self._clock = clock

    @classmethod
    def from_context(cls, context: BrowsingContext, *, clock: Clock) -> "SessionBackend":
        return cls(context.session_storage, clock=clock)

    async def write(self, record: StorageRecord) -> None:
        self.area.set_item(self.key, record.id)
        self.area.set_item(self.key + META_SUFFIX, json.dumps(record.meta()))

    async def read(self) -> Optional[str]:
        value = self.area.get_item(self.key)
        if not value:
            return None
        if _meta_expired(_parse_meta(self.area.get_item(self.key + META_SUFFIX)), self._clock()):
            for k in (self.key, self.key + META_SUFFIX):
                try:
                    self.area.remove_item(k)
                except Exception:
                    logger.debug("purge of %s failed", k, exc_info=True)
            return None
        return value

    async def probe(self) -> bool:
        self.area.set_item(_PROBE_KEY, "1")
        self.area.remove_item(_PROBE_KEY)
        return True


# ------------------------------
# Versioned database tier
# ------------------------------

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS qx7data (
  id        TEXT PRIMARY KEY,
  timestamp INTEGER NOT NULL,
  version   TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_qx7data_timestamp ON qx7data(timestamp);
CREATE INDEX IF NOT EXISTS idx_qx7data_version ON qx7data(version);

CREATE TABLE IF NOT EXISTS metadata (
  key       TEXT PRIMARY KEY,
  timestamp INTEGER NOT NULL,
  ttl       INTEGER NOT NULL,
  version   TEXT NOT NULL
);
"""


@register_backend
class VersionedDatabaseBackend(StorageBackend):
    """
    SQLite-backed tier with an explicit schema version (PRAGMA user_version).

      - qx7data:  one row per id ever written, newest by timestamp wins.
      - metadata: the latest write's {timestamp, ttl, version} under
                  key "current_qx7".

    A fresh file (version 0) is initialised on first write. Blocking sqlite
    calls run in a worker thread; each call opens its own connection.
    """

    kind = BackendKind.DATABASE
    demote_on_error = True

    def __init__(
        self,
        path: str,
        *,
        expected_version: int = DB_SCHEMA_VERSION,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        clock: Clock = now_ms,
    ) -> None:
        self.path = path
        self.expected_version = int(expected_version)
        self.default_ttl_ms = int(default_ttl_ms)
        self._clock = clock

    @classmethod
    def from_context(cls, context: BrowsingContext, *, clock: Clock) -> Optional["VersionedDatabaseBackend"]:
        if not context.database_path:
            return None
        return cls(context.database_path, clock=clock)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _user_version(conn: sqlite3.Connection) -> int:
        return int(conn.execute("PRAGMA user_version").fetchone()[0])

    def _write_sync(self, record: StorageRecord) -> None:
        with closing(self._connect()) as conn:
            version = self._user_version(conn)
            if version == 0:
                conn.executescript(_DB_SCHEMA)
                conn.execute(f"PRAGMA user_version = {self.expected_version}")
            elif version != self.expected_version:
                raise SchemaVersionError(version, self.expected_version, backend=self.kind.value)
            with conn:
                conn.execute(
                    "INSERT OR REPLACE INTO qx7data(id, timestamp, version) VALUES (?, ?, ?)",
                    (record.id, record.timestamp, record.version),
                )
                conn.execute(
                    "INSERT OR REPLACE INTO metadata(key, timestamp, ttl, version) VALUES (?, ?, ?, ?)",
                    (DB_METADATA_KEY, record.timestamp, record.ttl, record.version),
                )

    def _read_sync(self) -> Optional[str]:
        if not os.path.exists(self.path):
            return None
        with closing(self._connect()) as conn:
            version = self._user_version(conn)
            if version > self.expected_version:
                raise SchemaVersionError(version, self.expected_version, backend=self.kind.value)
            if version < self.expected_version:
                # Older layouts are never migrated; they read as empty.
                return None
            row = conn.execute(
                "SELECT id, timestamp FROM qx7data ORDER BY timestamp DESC LIMIT 1"
            ).fetchone()
            if row is None:
                return None
            meta = conn.execute(
                "SELECT ttl FROM metadata WHERE key = ?", (DB_METADATA_KEY,)
            ).fetchone()
            ttl = int(meta["ttl"]) if meta is not None else self.default_ttl_ms
            now = self._clock()
            if now > int(row["timestamp"]) + ttl:
                with conn:
                    conn.execute("DELETE FROM qx7data WHERE timestamp + ? < ?", (ttl, now))
                return None
            return str(row["id"])

    async def write(self, record: StorageRecord) -> None:
        await asyncio.to_thread(self._write_sync, record)

    async def read(self) -> Optional[str]:
        return await asyncio.to_thread(self._read_sync)


# ------------------------------
# Cookie tier
# ------------------------------

@register_backend
class CookieBackend(StorageBackend):
    """
    Cookie tier holding the projection "id|timestamp|version", URL-encoded.

    Expiry travels in the cookie's `expires` attribute and is enforced by
    the jar itself.
    """

    kind = BackendKind.COOKIES

    def __init__(self, jar: CookieJar, *, name: str = QX7_ID_KEY) -> None:
        self.jar = jar
        self.name = name

    @classmethod
    def from_context(cls, context: BrowsingContext, *, clock: Clock) -> "CookieBackend":
        return cls(context.cookies)

    @staticmethod
    def encode(record: StorageRecord) -> str:
        return quote(f"{record.id}|{record.timestamp}|{record.version}", safe="")

    async def write(self, record: StorageRecord) -> None:
        self.jar.set_cookie(
            f"{self.name}={self.encode(record)}; expires={http_date(record.expires_at)}; "
            "path=/; SameSite=Lax"
        )

    async def read(self) -> Optional[str]:
        raw = self.jar.get(self.name)
        if not raw:
            return None
        qx7_id = unquote(raw).split("|", 1)[0]
        return qx7_id or None


# ------------------------------
# Background worker tier
# ------------------------------

@register_backend
class WorkerBackend(StorageBackend):
    """Background-worker tier; unavailable while no controller is attached."""

    kind = BackendKind.WORKER

    def __init__(self, channel: Optional[WorkerChannel], *, clock: Clock = now_ms) -> None:
        self.channel = channel
        self._clock = clock

    @classmethod
    def from_context(cls, context: BrowsingContext, *, clock: Clock) -> "WorkerBackend":
        return cls(context.worker, clock=clock)

    @property
    def available(self) -> bool:
        return self.channel is not None and self.channel.active

    async def write(self, record: StorageRecord) -> None:
        if not self.available:
            raise BackendUnavailableError("no background worker controller", backend=self.kind.value)
        await self.channel.post_message(
            {"type": WORKER_STORE, "qx7Id": record.id, "metadata": record.meta()}
        )

    async def read(self) -> Optional[str]:
        if not self.available:
            return None
        reply = await self.channel.post_message({"type": WORKER_GET})
        if not reply or not reply.get("qx7Id"):
            return None
        if _meta_expired(reply.get("metadata"), self._clock()):
            await self.channel.post_message({"type": WORKER_CLEAR})
            return None
        return str(reply["qx7Id"])


# ------------------------------
# Orchestrator
# ------------------------------

class StorageOrchestrator:
    """
    Redundant write / prioritized read across storage tiers.

    The active set starts as every configured tier, ordered by READ_ORDER.
    Tiers with `demote_on_error` leave it permanently on their first error.
    """

    def __init__(
        self,
        backends: Sequence[StorageBackend],
        *,
        clock: Clock = now_ms,
        ttl_ms: int = DEFAULT_TTL_MS,
    ) -> None:
        by_kind: Dict[BackendKind, StorageBackend] = {}
        for backend in backends:
            if backend.kind in by_kind:
                raise ValueError(f"duplicate storage backend for {backend.kind.value}")
            by_kind[backend.kind] = backend
        self._backends = by_kind
        self._active: List[BackendKind] = [k for k in READ_ORDER if k in by_kind]
        self._demoted: List[BackendKind] = []
        self._clock = clock
        self.ttl_ms = int(ttl_ms)

    @property
    def active_kinds(self) -> Tuple[BackendKind, ...]:
        return tuple(self._active)

    @property
    def demoted_kinds(self) -> Tuple[BackendKind, ...]:
        return tuple(self._demoted)

    def backend(self, kind: BackendKind) -> Optional[StorageBackend]:
        return self._backends.get(BackendKind(kind))

    def _demote(self, kind: BackendKind, exc: BaseException) -> None:
        if kind not in self._active:
            return
        self._active.remove(kind)
        self._demoted.append(kind)
        logger.warning(
            "storage tier %s demoted after error: %s", kind.value, exc.__class__.__name__
        )

    def _select(self, priority: str) -> List[BackendKind]:
        if priority == "all":
            return list(self._active)
        kind = BackendKind(priority)  # ValueError for unknown tier names
        return [kind] if kind in self._active else []

    async def _write_one(self, kind: BackendKind, record: StorageRecord) -> WriteOutcome:
        backend = self._backends[kind]
        try:
            await backend.write(record)
        except Exception as exc:
            if backend.demote_on_error:
                self._demote(kind, exc)
            logger.debug("storage write to %s failed", kind.value, exc_info=True)
            error_kind = exc.kind if isinstance(exc, StorageBackendError) else ErrorKind.BACKEND
            return WriteOutcome(kind=kind, ok=False, error_kind=error_kind, error=str(exc) or exc.__class__.__name__)
        return WriteOutcome(kind=kind, ok=True)

    async def write_report(
        self,
        qx7_id: str,
        *,
        priority: str = "all",
        ttl_ms: Optional[int] = None,
    ) -> WriteReport:
        if not is_valid_identifier(qx7_id):
            return WriteReport(qx7_id=str(qx7_id), error_kind=ErrorKind.VALIDATION)
        kinds = self._select(priority)
        if not kinds:
            return WriteReport(qx7_id=qx7_id, error_kind=ErrorKind.BACKEND)
        record = StorageRecord(
            id=qx7_id,
            timestamp=self._clock(),
            ttl=int(ttl_ms if ttl_ms is not None else self.ttl_ms),
        )
        outcomes = await asyncio.gather(*(self._write_one(k, record) for k in kinds))
        report = WriteReport(qx7_id=qx7_id, outcomes=tuple(outcomes))
        if not report.ok:
            logger.warning("identity could not be persisted to any storage tier")
        return report

    async def write(
        self,
        qx7_id: str,
        *,
        priority: str = "all",
        ttl_ms: Optional[int] = None,
    ) -> bool:
        """True iff at least one tier accepted the record."""
        report = await self.write_report(qx7_id, priority=priority, ttl_ms=ttl_ms)
        return report.ok

    async def read(self) -> Optional[str]:
        """First valid, unexpired id in READ_ORDER, else None."""
        for kind in list(self._active):
            backend = self._backends[kind]
            try:
                value = await backend.read()
            except Exception as exc:
                if backend.demote_on_error:
                    self._demote(kind, exc)
                logger.debug("storage read from %s failed", kind.value, exc_info=True)
                continue
            if value and is_valid_identifier(value):
                return value
        return None

    async def storage_health(self) -> str:
        """
        Rate the primary tiers: Excellent (all), Good (>=70%), Fair (>=40%),
        otherwise Poor. Missing or demoted tiers count as unhealthy.
        """
        healthy = 0
        for kind in HEALTH_KINDS:
            if kind not in self._active:
                continue
            try:
                if await self._backends[kind].probe():
                    healthy += 1
            except Exception:
                logger.debug("health probe of %s failed", kind.value, exc_info=True)
        ratio = healthy / len(HEALTH_KINDS)
        if healthy == len(HEALTH_KINDS):
            return "Excellent"
        if ratio >= 0.7:
            return "Good"
        if ratio >= 0.4:
            return "Fair"
        return "Poor"


def build_default_backends(context: BrowsingContext, *, clock: Optional[Clock] = None) -> List[StorageBackend]:
    """Instantiate every registered tier the context supports."""
    clk = clock or context.clock
    backends: List[StorageBackend] = []
    for kind in READ_ORDER:
        backend = backend_class(kind).from_context(context, clock=clk)
        if backend is not None:
            backends.append(backend)
    return backends


def make_orchestrator(context: BrowsingContext, *, ttl_ms: int = DEFAULT_TTL_MS) -> StorageOrchestrator:
    return StorageOrchestrator(build_default_backends(context), clock=context.clock, ttl_ms=ttl_ms)


__all__ = [
    "QX7_ID_KEY",
    "BACKUP_KEYS",
    "RECORD_VERSION",
    "DEFAULT_TTL_MS",
    "DB_SCHEMA_VERSION",
    "BackendKind",
    "READ_ORDER",
    "StorageRecord",
    "WriteOutcome",
    "WriteReport",
    "StorageBackend",
    "KeyValueBackend",
    "SessionBackend",
    "VersionedDatabaseBackend",
    "CookieBackend",
    "WorkerBackend",
    "StorageOrchestrator",
    "register_backend",
    "backend_class",
    "build_default_backends",
    "make_orchestrator",
]

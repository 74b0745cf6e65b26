# FILE: qx7/browser.py
"""
Client-side environment model.

The client half of the identity system runs against one `BrowsingContext`:
a page with an origin, its storage areas, a cookie jar, a request cache,
an optional background worker and a frame tree. Everything is in-process
so the storage, clearing and sync logic can run under asyncio without a
real browser.

  - StorageArea / FileStorageArea:
      string key/value areas. The in-memory area plays the session store;
      the file-backed area survives restarts and plays the durable store.

  - CookieJar:
      parses `Set-Cookie`-style assignment strings and renders the visible
      `name=value; ...` string, hiding expired cookies.

  - WorkerChannel:
      a background worker reachable by message. It keeps whatever it was
      last told to store and answers liveness probes.

  - BrowsingContext.post_message:
      structured-clone delivery to the target context's listeners, dropped
      when the target origin does not match.
"""
from __future__ import annotations

import copy
import email.utils
import inspect
import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

Clock = Callable[[], int]
MessageListener = Callable[["MessageEvent"], Union[None, Awaitable[None]]]


def now_ms() -> int:
    """Wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


def http_date(epoch_ms: int) -> str:
    return email.utils.formatdate(epoch_ms / 1000.0, usegmt=True)


# ------------------------------
# Key/value storage areas
# ------------------------------

class StorageArea:
    """
    In-memory string key/value area.

    `fail_with` makes every operation raise the given exception, which is
    how a disabled, blocked or over-quota area looks to callers.
    """

    def __init__(
        self,
        initial: Optional[Dict[str, str]] = None,
        *,
        fail_with: Optional[BaseException] = None,
    ) -> None:
        self._items: Dict[str, str] = dict(initial or {})
        self.fail_with = fail_with

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def get_item(self, key: str) -> Optional[str]:
        self._check()
        return self._items.get(key)

    def set_item(self, key: str, value: Any) -> None:
        self._check()
        self._items[key] = str(value)
        self._flush()

    def remove_item(self, key: str) -> None:
        self._check()
        if self._items.pop(key, None) is not None:
            self._flush()

    def keys(self) -> List[str]:
        self._check()
        return list(self._items.keys())

    def clear(self) -> None:
        self._check()
        self._items.clear()
        self._flush()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def _flush(self) -> None:
        pass


class FileStorageArea(StorageArea):
    """
    Durable area persisted as a JSON object at `path`.

    Writes replace the file atomically; a corrupt or non-object file is
    treated as empty.
    """

    def __init__(self, path: str, *, fail_with: Optional[BaseException] = None) -> None:
        super().__init__(fail_with=fail_with)
        self.path = path
        if os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    doc = json.load(f)
            except (OSError, ValueError):
                logger.warning("durable storage file unreadable; starting empty", exc_info=True)
                doc = {}
            if isinstance(doc, dict):
                self._items = {str(k): str(v) for k, v in doc.items()}

    def _flush(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp = tempfile.mkstemp(prefix=".qx7-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._items, f, separators=(",", ":"))
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


# ------------------------------
# Cookies
# ------------------------------

@dataclass
class Cookie:
    name: str
    value: str
    expires_ms: Optional[int] = None
    path: str = "/"
    same_site: Optional[str] = None


class CookieJar:
    """
    Document-level cookie jar.

    Only the attributes the identity cookie uses are interpreted
    (expires, max-age, path, samesite); others are ignored.
    """

    def __init__(self, *, clock: Clock = now_ms, fail_with: Optional[BaseException] = None) -> None:
        self._cookies: Dict[str, Cookie] = {}
        self._clock = clock
        self.fail_with = fail_with

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def set_cookie(self, assignment: str) -> None:
        self._check()
        parts = [p.strip() for p in assignment.split(";")]
        if not parts or "=" not in parts[0]:
            raise ValueError("cookie assignment must start with name=value")
        name, value = parts[0].split("=", 1)
        cookie = Cookie(name=name.strip(), value=value.strip())
        for attr in parts[1:]:
            if not attr:
                continue
            key, _, raw = attr.partition("=")
            key = key.strip().lower()
            raw = raw.strip()
            if key == "expires":
                parsed = email.utils.parsedate_to_datetime(raw)
                cookie.expires_ms = int(parsed.timestamp() * 1000)
            elif key == "max-age":
                cookie.expires_ms = self._clock() + int(raw) * 1000
            elif key == "path":
                cookie.path = raw or "/"
            elif key == "samesite":
                cookie.same_site = raw
        if cookie.expires_ms is not None and cookie.expires_ms <= self._clock():
            self._cookies.pop(cookie.name, None)
            return
        self._cookies[cookie.name] = cookie

    def _purge_expired(self) -> None:
        now = self._clock()
        for name in [n for n, c in self._cookies.items() if c.expires_ms is not None and c.expires_ms <= now]:
            del self._cookies[name]

    def get(self, name: str) -> Optional[str]:
        self._check()
        self._purge_expired()
        cookie = self._cookies.get(name)
        return cookie.value if cookie else None

    def cookie_string(self) -> str:
        self._check()
        self._purge_expired()
        return "; ".join(f"{c.name}={c.value}" for c in self._cookies.values())

    def clear(self) -> None:
        self._cookies.clear()


# ------------------------------
# Request cache
# ------------------------------

class RequestCache:
    """Named request-scoped cache buckets; only their presence matters here."""

    def __init__(self, names: Optional[List[str]] = None, *, fail_with: Optional[BaseException] = None) -> None:
        self._names: List[str] = list(names or [])
        self.fail_with = fail_with

    async def keys(self) -> List[str]:
        if self.fail_with is not None:
            raise self.fail_with
        return list(self._names)

    def open(self, name: str) -> None:
        if name not in self._names:
            self._names.append(name)

    def clear(self) -> None:
        self._names.clear()


# ------------------------------
# Background worker
# ------------------------------

WORKER_STORE = "STORE_QX7_ID"
WORKER_GET = "GET_QX7_ID"
WORKER_CHECK = "CHECK_DATA"
WORKER_CLEAR = "CLEAR_QX7_ID"


class WorkerChannel:
    """
    Message endpoint of a background worker.

    `active` mirrors whether a controller is attached to the page. An
    inactive worker ignores messages and never acknowledges probes.
    """

    def __init__(self, *, active: bool = True, fail_with: Optional[BaseException] = None) -> None:
        self.active = active
        self.fail_with = fail_with
        self.state: Dict[str, Any] = {}
        self.received: List[Dict[str, Any]] = []

    async def post_message(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if self.fail_with is not None:
            raise self.fail_with
        if not self.active:
            return None
        msg = copy.deepcopy(message)
        self.received.append(msg)
        kind = msg.get("type")
        if kind == WORKER_STORE:
            self.state["qx7Id"] = msg.get("qx7Id")
            self.state["metadata"] = msg.get("metadata") or {}
            return {"type": "STORED"}
        if kind == WORKER_GET:
            return {"type": "QX7_ID", "qx7Id": self.state.get("qx7Id"), "metadata": self.state.get("metadata")}
        if kind == WORKER_CHECK:
            return {"type": "DATA_STATUS", "hasData": bool(self.state.get("qx7Id"))}
        if kind == WORKER_CLEAR:
            self.state.clear()
            return {"type": "CLEARED"}
        return None

    async def ping(self) -> bool:
        """Liveness probe: acknowledged iff the worker runs and holds state."""
        reply = await self.post_message({"type": WORKER_CHECK, "timestamp": now_ms()})
        return bool(reply and reply.get("hasData"))

    def wipe(self) -> None:
        self.state.clear()


# ------------------------------
# Browsing contexts
# ------------------------------

@dataclass(frozen=True)
class PrivacyHints:
    is_incognito: bool = False
    has_limited_storage: bool = False
    session_only: bool = False


@dataclass(frozen=True)
class MessageEvent:
    data: Any
    origin: str
    source: Optional["BrowsingContext"] = None


class BrowsingContext:
    """
    One page (top-level or framed) and the client state it can reach.

    `qx7_id` is the page-level current identity, shared by the client and
    the sync bridge.
    """

    def __init__(
        self,
        origin: str,
        *,
        local_storage: Optional[StorageArea] = None,
        session_storage: Optional[StorageArea] = None,
        cookies: Optional[CookieJar] = None,
        cache: Optional[RequestCache] = None,
        worker: Optional[WorkerChannel] = None,
        database_path: Optional[str] = None,
        privacy: Optional[PrivacyHints] = None,
        cognito_user_id: Optional[str] = None,
        returning_from_auth: bool = False,
        clock: Clock = now_ms,
    ) -> None:
        self.origin = origin
        self.clock = clock
        self.local_storage = local_storage if local_storage is not None else StorageArea()
        self.session_storage = session_storage if session_storage is not None else StorageArea()
        self.cookies = cookies if cookies is not None else CookieJar(clock=clock)
        self.cache = cache if cache is not None else RequestCache()
        self.worker = worker
        self.database_path = database_path
        self.privacy = privacy
        self.cognito_user_id = cognito_user_id
        self.returning_from_auth = returning_from_auth

        self.parent: Optional[BrowsingContext] = None
        self.frames: List[BrowsingContext] = []
        self.qx7_id: Optional[str] = None
        self._listeners: List[MessageListener] = []

    def __repr__(self) -> str:
        return f"BrowsingContext(origin={self.origin!r}, frames={len(self.frames)})"

    @property
    def is_framed(self) -> bool:
        return self.parent is not None

    def attach_frame(self, child: "BrowsingContext") -> "BrowsingContext":
        child.parent = self
        self.frames.append(child)
        return child

    def add_message_listener(self, listener: MessageListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_message_listener(self, listener: MessageListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def post_message(
        self,
        data: Any,
        target_origin: str,
        *,
        source: Optional["BrowsingContext"] = None,
    ) -> bool:
        """
        Deliver `data` to this context's listeners.

        Returns False when `target_origin` does not match this context,
        in which case nothing is delivered.
        """
        if target_origin != "*" and target_origin != self.origin:
            logger.debug(
                "dropping message for %s: target origin %s does not match",
                self.origin,
                target_origin,
            )
            return False
        event = MessageEvent(
            data=copy.deepcopy(data),
            origin=source.origin if source is not None else self.origin,
            source=source,
        )
        for listener in list(self._listeners):
            result = listener(event)
            if inspect.isawaitable(result):
                await result
        return True


__all__ = [
    "now_ms",
    "http_date",
    "StorageArea",
    "FileStorageArea",
    "Cookie",
    "CookieJar",
    "RequestCache",
    "WorkerChannel",
    "PrivacyHints",
    "MessageEvent",
    "BrowsingContext",
    "WORKER_STORE",
    "WORKER_GET",
    "WORKER_CHECK",
    "WORKER_CLEAR",
]

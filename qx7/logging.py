# FILE: qx7/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import re
import sys
import time
import traceback
import uuid
from typing import Any, Dict, Optional, Set

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("QX7_LOG_SCHEMA", "qx7.log.v1")
_LOG_SERVICE = os.environ.get("QX7_SERVICE", "qx7")
_LOG_VERSION = os.environ.get(
    "QX7_BUILD_VERSION", os.environ.get("QX7_VERSION", "0.0.0")
)
_LOG_ENV = os.environ.get("QX7_ENV", os.environ.get("ENV", "dev"))
_LOG_INSTANCE = os.environ.get(
    "QX7_INSTANCE", os.uname().nodename if hasattr(os, "uname") else "unknown"
)

# Max bytes per field (truncate to keep JSON small)
try:
    _MAX_FIELD = int(os.environ.get("QX7_LOG_MAX_FIELD", "4096"))
    _MAX_FIELD = max(512, _MAX_FIELD)
except ValueError:
    _MAX_FIELD = 4096

# Stack emission toggle
_INCLUDE_STACK = os.environ.get("QX7_LOG_INCLUDE_STACK", "1") == "1"

# Redaction keys (case-insensitive, for headers / obvious secrets)
_DEFAULT_REDACT = {
    "authorization",
    "proxy-authorization",
    "cookie",
    "set-cookie",
    "x-cognito-user-id",
    "x-api-key",
}
_REDACT_KEYS = {
    k.strip().lower()
    for k in os.environ.get("QX7_LOG_REDACT", "").split(",")
    if k.strip()
} or _DEFAULT_REDACT

# Full visitor ids never reach the log stream; only this many leading chars
ID_PREFIX_LEN = 8

# Upstream request ids are reused only when they look like opaque hex tokens
REQUEST_ID_RE = re.compile(r"^[0-9a-fA-F]{8,64}$")

# Standard LogRecord attributes that are not treated as dynamic meta
_LOG_RECORD_STD_ATTRS: Set[str] = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "qx7_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context (per-coroutine)."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def unbind(*keys: str) -> None:
    cur = dict(_log_ctx.get())
    for k in keys:
        cur.pop(k, None)
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    # RFC3339 with milliseconds, UTC Z
    now = _dt.datetime.now(_dt.timezone.utc)
    ms = int(now.microsecond / 1000)
    base = now.replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return f"{base[:-1]}.{ms:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _finite_float(x: Any) -> Optional[float]:
    try:
        xf = float(x)
    except (TypeError, ValueError):
        return None
    if xf != xf or xf in (float("inf"), float("-inf")):
        return None
    return xf


def id_prefix(value: Optional[str]) -> Optional[str]:
    """Shorten a visitor id to the prefix that is safe to log."""
    if not value:
        return None
    return str(value)[:ID_PREFIX_LEN]


def _redact_key(k: str) -> bool:
    return k.lower() in _REDACT_KEYS


def scrub_dict(d: Dict[str, Any]) -> Dict[str, Any]:
    """
    Scrub obvious secrets from a dict (typically HTTP headers).

    Keys listed in `_REDACT_KEYS` get replaced by "***". The `x-qx7-id`
    header is shortened to its loggable prefix. Nested dictionaries are
    scrubbed recursively.
    """
    out: Dict[str, Any] = {}
    for k, v in (d or {}).items():
        if _redact_key(k):
            out[k] = "***"
        elif k.lower() == "x-qx7-id" and isinstance(v, str):
            out[k] = id_prefix(v)
        else:
            out[k] = v if not isinstance(v, dict) else scrub_dict(v)
    return out


def _meta_from_record(
    record: logging.LogRecord, evt_keys: Set[str]
) -> Optional[Dict[str, Any]]:
    meta: Dict[str, Any] = {}
    for k, v in record.__dict__.items():
        if k in _LOG_RECORD_STD_ATTRS or k in evt_keys:
            continue
        if k.startswith("_") or k == "message":
            continue
        meta[k] = _truncate(v)
    return meta or None


# ---------- JSON formatter ----------
def _merge_optional(dst: Dict[str, Any], **kvs: Any) -> None:
    for k, v in kvs.items():
        if v is None:
            continue
        if isinstance(v, float):
            vv = _finite_float(v)
            if vv is None:
                continue
            dst[k] = vv
        else:
            dst[k] = _truncate(v)


class JSONFormatter(logging.Formatter):
    """
    JSON formatter with a stable envelope.

    Core envelope fields:
      - schema, service, version, env, instance
      - ts, lvl, msg, logger
      - req_id, path, method, status, latency_ms, bytes_in, bytes_out
      - endpoint, persistence_method, is_returning, id_prefix
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()

        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "version": _LOG_VERSION,
            "env": _LOG_ENV,
            "instance": _LOG_INSTANCE,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": str(record.getMessage()),
        }

        # Context picks (prefer bound ctx -> record.<attr>)
        def _pick(*names: str) -> Optional[Any]:
            for n in names:
                if n in ctx:
                    return ctx[n]
                v = getattr(record, n, None)
                if v is not None:
                    return v
            return None

        _merge_optional(
            evt,
            req_id=_pick("req_id"),
            path=_pick("path"),
            method=_pick("method"),
            status=_pick("status") or _pick("status_code"),
            latency_ms=_pick("latency_ms"),
            bytes_in=_pick("bytes_in"),
            bytes_out=_pick("bytes_out"),
            endpoint=_pick("endpoint"),
            persistence_method=_pick("persistence_method"),
            is_returning=_pick("is_returning"),
            id_prefix=_pick("id_prefix"),
        )

        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta = _meta_from_record(record, set(evt.keys()) | set(ctx.keys()))
        if meta:
            evt["meta"] = meta

        return _compact_json(evt)


# ---------- Uvicorn/Root integration ----------
def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    include_uvicorn: bool = True,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """
    Configure root (+ optionally uvicorn) for JSON output.
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)

    if include_uvicorn:
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
            lg = logging.getLogger(name)
            lg.setLevel(lvl)
            _clear_handlers(lg)
            lg.addHandler(h)
            lg.propagate = False

    return root


# ---------- Request helpers ----------
def ensure_request_id(headers: Optional[Dict[str, str]] = None) -> str:
    """
    Get or create a request id; bind into context immediately.

    An upstream `x-request-id` is reused only when it matches REQUEST_ID_RE;
    otherwise a fresh 32-hex id is minted.
    """
    rid = ((headers or {}).get("x-request-id") or "").strip()
    if not REQUEST_ID_RE.fullmatch(rid):
        rid = uuid.uuid4().hex
    bind(req_id=rid)
    return rid


def bind_request_meta(
    *,
    path: Optional[str] = None,
    method: Optional[str] = None,
    endpoint: Optional[str] = None,
) -> None:
    """Bind request-scoped tags into the logging context."""
    bind(path=path, method=method, endpoint=endpoint)


def log_resolution(
    logger: logging.Logger,
    *,
    endpoint: str,
    qx7_id: str,
    persistence_method: str,
    is_returning: bool,
    not_modified: bool = False,
    message: str = "identity.resolved",
    extra: Optional[Dict[str, Any]] = None,
    level: int = logging.INFO,
) -> None:
    """
    Log one identity resolution.

    Only the id prefix is emitted; full ids and raw header values never are.
    """
    extra_dict: Dict[str, Any] = {
        "endpoint": endpoint,
        "id_prefix": id_prefix(qx7_id),
        "persistence_method": str(persistence_method),
        "is_returning": bool(is_returning),
        "not_modified": bool(not_modified),
    }
    if extra:
        for k, v in extra.items():
            if v is None:
                continue
            extra_dict[str(k)] = _truncate(v)
    logger.log(level, message, extra=extra_dict)


# ---------- ASGI middleware (structured request logs) ----------
class RequestLogMiddleware:
    """
    ASGI middleware that emits one JSON `http.finish` line per request with
    req_id, method, path, status, latency_ms and bytes_out.

    It never logs bodies. With `log_headers=True` an `http.start` line
    carries headers scrubbed via `scrub_dict`.
    Usage:
        app.add_middleware(RequestLogMiddleware, log_headers=False)
    """

    def __init__(
        self,
        app,
        *,
        logger_name: str = "qx7.http",
        log_headers: bool = False,
    ):
        self.app = app
        self.log = logging.getLogger(logger_name)
        self.log_headers = bool(log_headers)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            return await self.app(scope, receive, send)

        method = scope.get("method", "")
        path = scope.get("path", "")
        headers = {
            k.decode("latin1").lower(): v.decode("latin1")
            for k, v in (scope.get("headers") or [])
        }
        rid = ensure_request_id(headers)
        # Downstream middleware reads the id from request.state
        scope.setdefault("state", {})["request_id"] = rid
        bind_request_meta(path=path, method=method)

        if self.log_headers:
            self.log.info("http.start", extra={"headers": scrub_dict(headers)})

        t0 = time.perf_counter()
        status_holder = {"code": None}
        bytes_out_holder = {"n": 0}

        async def _send_wrapper(message):
            if message["type"] == "http.response.start":
                status_holder["code"] = message.get("status")
            if message["type"] == "http.response.body":
                bytes_out_holder["n"] += len(message.get("body", b"") or b"")
            await send(message)

        try:
            await self.app(scope, receive, _send_wrapper)
        finally:
            dt_ms = (time.perf_counter() - t0) * 1000.0
            self.log.info(
                "http.finish",
                extra={
                    "req_id": rid,
                    "status": status_holder["code"],
                    "latency_ms": round(dt_ms, 3),
                    "bytes_out": bytes_out_holder["n"],
                },
            )
            # Clear request-scoped keys to avoid leakage across coroutines
            unbind("path", "method", "endpoint")


# ---------- Convenience: module-level logger ----------
_logger: Optional[logging.Logger] = None


def get_logger(name: str = "qx7") -> logging.Logger:
    """
    Return a logger; the first call installs the JSON root handler.
    """
    global _logger
    if _logger is None:
        lvl = os.environ.get("QX7_LOG_LEVEL", "INFO")
        _logger = configure_json_logging(level=lvl, include_uvicorn=True)
    return logging.getLogger(name)


__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "configure_json_logging",
    "get_logger",
    "ensure_request_id",
    "bind_request_meta",
    "log_resolution",
    "id_prefix",
    "JSONFormatter",
    "RequestLogMiddleware",
    "scrub_dict",
]

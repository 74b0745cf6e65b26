# FILE: qx7/middleware.py
from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .logging import bind


# --------------------------------
# Shared helpers
# --------------------------------


def _default_path_normalizer(path: str) -> str:
    """
    Keep label cardinality bounded: long hex runs (visitor ids) and long
    numeric segments collapse to placeholders.
    """
    p = re.sub(r"/[0-9a-fA-F]{16,}", "/:hex", path)
    p = re.sub(r"/\d{4,}", "/:id", p)
    return p


# --------------------------------
# Request context middleware
# --------------------------------


@dataclass
class RequestContextConfig:
    """
    Configuration for RequestContextMiddleware.

    Assigns and propagates a request id; never inspects payloads.
    """

    request_id_header: str = "X-Request-Id"
    id_length: int = 32  # number of hex characters

    # Upstream request-id trust.
    accept_upstream_request_id: bool = True
    # Upstream ids not matching this pattern are replaced.
    id_format_regex: Optional[str] = r"^[0-9a-fA-F]{8,64}$"

    attach_ids_to_state: bool = True
    expose_ids_to_downstream_headers: bool = True


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Injects a request id into request.state, the logging context and the
    response headers. A well-formed upstream id is reused.
    """

    def __init__(self, app, *, config: Optional[RequestContextConfig] = None):
        super().__init__(app)
        self._cfg = config or RequestContextConfig()
        self._id_pattern = (
            re.compile(self._cfg.id_format_regex) if self._cfg.id_format_regex else None
        )

    def _upstream_id(self, request: Request) -> Optional[str]:
        if not self._cfg.accept_upstream_request_id:
            return None
        v = (request.headers.get(self._cfg.request_id_header) or "").strip()
        if not v:
            return None
        if self._id_pattern is not None and not self._id_pattern.fullmatch(v):
            return None
        return v[: self._cfg.id_length]

    async def dispatch(self, request: Request, call_next):
        # RequestLogMiddleware, when mounted outside, has already fixed the id
        rid = (
            getattr(request.state, "request_id", None)
            or self._upstream_id(request)
            or uuid.uuid4().hex[: self._cfg.id_length]
        )
        bind(req_id=rid)

        if self._cfg.attach_ids_to_state:
            request.state.request_id = rid

        response = await call_next(request)

        if self._cfg.expose_ids_to_downstream_headers:
            response.headers.setdefault(self._cfg.request_id_header, rid)
        return response


# --------------------------------
# Metrics middleware
# --------------------------------


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Prometheus counter + histogram per request.

    Metrics:
      - Counter:   qx7_requests_total{route, status}
      - Histogram: qx7_request_latency_seconds{route}
    """

    def __init__(
        self,
        app,
        counter: Counter,
        histogram: Histogram,
        *,
        path_normalizer: Callable[[str], str] = _default_path_normalizer,
    ):
        super().__init__(app)
        self.counter = counter
        self.hist = histogram
        self._normalize = path_normalizer

    async def dispatch(self, request: Request, call_next):
        route_label = self._normalize(request.url.path)
        t0 = time.perf_counter()
        status_label = "err"
        try:
            response = await call_next(request)
            status_label = "ok" if 200 <= int(response.status_code) < 400 else "err"
            return response
        finally:
            dt = time.perf_counter() - t0
            self.counter.labels(route=route_label, status=status_label).inc()
            self.hist.labels(route=route_label).observe(dt)


__all__ = [
    "RequestContextConfig",
    "RequestContextMiddleware",
    "MetricsMiddleware",
]

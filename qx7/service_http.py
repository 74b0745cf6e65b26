# FILE: qx7/service_http.py
from __future__ import annotations

import base64
import email.utils
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.background import BackgroundTask
from starlette.middleware.cors import CORSMiddleware

from .analytics import AnalyticsClient
from .config import Settings, make_reloadable_settings
from .exporter import Qx7PrometheusExporter
from .logging import RequestLogMiddleware, bind_request_meta, get_logger, log_resolution
from .middleware import MetricsMiddleware, RequestContextMiddleware
from .resolver import PersistenceMethod, Resolution, mint_random_id, resolve
from .signals import H_PERSISTENCE_METHOD, H_QX7_ID, extract_signal_bundle, is_not_modified
from .validator import quote_etag


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: 1x1 transparent GIF served by onboarding-step2.
PIXEL_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///ywAAAAAAQABAAACAUwAOw==")

STEP1 = "onboarding-step1"
STEP2 = "onboarding-step2"

_ERROR_BODY = "Internal server error"


@dataclass
class ServiceState:
    """Per-app collaborators, reachable from handlers via app.state.qx7."""

    settings: Settings
    exporter: Qx7PrometheusExporter
    analytics: AnalyticsClient
    started_at: float


def _http_date(offset_s: float) -> str:
    return email.utils.formatdate(time.time() + offset_s, usegmt=True)


def _identity_headers(resolution: Resolution) -> Dict[str, str]:
    return {
        "ETag": quote_etag(resolution.id),
        H_QX7_ID: resolution.id,
        H_PERSISTENCE_METHOD: resolution.method.value,
    }


# ---------------------------------------------------------------------------
# Identity endpoints
# ---------------------------------------------------------------------------


def _build_router(state: ServiceState) -> APIRouter:
    router = APIRouter(prefix=state.settings.base_path.rstrip("/"))
    settings = state.settings
    exporter = state.exporter
    analytics = state.analytics
    logger = get_logger("qx7.http")

    def _resolve_or_304(endpoint: str, request: Request):
        signals = extract_signal_bundle(request.headers)
        resolution = resolve(signals)
        not_modified = is_not_modified(signals.etag, resolution.id)
        log_resolution(
            logger,
            endpoint=endpoint,
            qx7_id=resolution.id,
            persistence_method=resolution.method.value,
            is_returning=resolution.is_returning,
            not_modified=not_modified,
        )
        if not_modified:
            exporter.record_not_modified(endpoint)
            return resolution, Response(status_code=304, headers={"ETag": quote_etag(resolution.id)})
        exporter.record_resolution(endpoint, resolution.method.value, resolution.is_returning)
        return resolution, None

    def _analytics_task(rockman_id: Optional[str], resolution: Resolution, endpoint: str) -> BackgroundTask:
        return BackgroundTask(
            analytics.send_event, rockman_id, resolution.id, endpoint, resolution.method.value
        )

    @router.get("/" + STEP1)
    async def onboarding_step1(request: Request, rockmanId: Optional[str] = None) -> Response:
        bind_request_meta(endpoint=STEP1)
        try:
            resolution, not_modified = _resolve_or_304(STEP1, request)
            if not_modified is not None:
                return not_modified

            headers = _identity_headers(resolution)
            headers["Cache-Control"] = f"private, max-age={settings.etag_max_age_s}"
            return JSONResponse(
                {
                    "qx7Id": resolution.id,
                    "persistenceMethod": resolution.method.value,
                    "isReturning": resolution.is_returning,
                },
                headers=headers,
                background=_analytics_task(rockmanId, resolution, STEP1),
            )
        except Exception:
            logger.exception("%s failed; answering with a fresh id", STEP1)
            exporter.record_error(STEP1)
            return JSONResponse(
                {"error": _ERROR_BODY, "qx7Id": mint_random_id()},
                status_code=500,
            )

    @router.get("/" + STEP2)
    async def onboarding_step2(request: Request, rockmanId: Optional[str] = None) -> Response:
        bind_request_meta(endpoint=STEP2)
        try:
            resolution, not_modified = _resolve_or_304(STEP2, request)
            if not_modified is not None:
                return not_modified

            headers = _identity_headers(resolution)
            headers["Cache-Control"] = f"public, max-age={settings.pixel_max_age_s}, immutable"
            headers["Expires"] = _http_date(settings.pixel_expires_s)
            return Response(
                content=PIXEL_GIF,
                media_type="image/gif",
                headers=headers,
                background=_analytics_task(rockmanId, resolution, STEP2),
            )
        except Exception:
            logger.exception("%s failed; answering with a fresh id", STEP2)
            exporter.record_error(STEP2)
            return Response(
                content=PIXEL_GIF,
                status_code=500,
                media_type="image/gif",
                headers={
                    H_QX7_ID: mint_random_id(),
                    H_PERSISTENCE_METHOD: PersistenceMethod.ERROR_FALLBACK.value,
                },
            )

    return router


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Optional[Settings] = None,
    *,
    analytics: Optional[AnalyticsClient] = None,
    exporter: Optional[Qx7PrometheusExporter] = None,
) -> FastAPI:
    """
    Build the visitor identity HTTP surface:

    - {base_path}/onboarding-step1: JSON identity + ETag;
    - {base_path}/onboarding-step2: confirmation pixel;
    - /healthz, /readyz, /version, /metrics.
    """
    settings = settings or make_reloadable_settings().get()

    app = FastAPI(
        title="qx7-identity",
        version=settings.version,
        openapi_url="/openapi.json" if settings.enable_docs else None,
        docs_url="/docs" if settings.enable_docs else None,
        redoc_url=None,
    )

    exporter = exporter or Qx7PrometheusExporter(
        version=settings.version,
        config_hash=settings.config_hash(),
        enabled=settings.metrics_enabled,
    )
    analytics = analytics or AnalyticsClient(
        settings.analytics_url,
        enabled=settings.analytics_enabled,
        timeout_s=settings.analytics_timeout_s,
        exporter=exporter,
    )
    state = ServiceState(
        settings=settings,
        exporter=exporter,
        analytics=analytics,
        started_at=time.time(),
    )
    app.state.qx7 = state

    # CORS: explicit allow-list or allow-all
    allowed_origins = ["*"] if settings.cors_allow_all else list(settings.cors_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_methods=["GET"],
        allow_headers=["*"],
        expose_headers=["ETag", "X-Request-Id", H_QX7_ID, H_PERSISTENCE_METHOD],
    )
    if exporter.requests_total is not None and exporter.request_latency is not None:
        app.add_middleware(
            MetricsMiddleware,
            counter=exporter.requests_total,
            histogram=exporter.request_latency,
        )
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(RequestLogMiddleware)

    app.include_router(_build_router(state))

    config_hash = settings.config_hash()

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"status": "ok", "config_hash": config_hash, "version": settings.version}

    @app.get("/readyz")
    def readyz() -> Dict[str, Any]:
        return {"status": "ok", "metrics": exporter.enabled, "analytics": analytics.enabled}

    @app.get("/version")
    def version() -> Dict[str, Any]:
        return {
            "version": settings.version,
            "config_hash": config_hash,
            "config_origin": settings.config_origin,
            "base_path": settings.base_path,
        }

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(generate_latest(exporter.registry), media_type=CONTENT_TYPE_LATEST)

    return app


if __name__ == "__main__":
    import uvicorn

    _settings = make_reloadable_settings().get()
    uvicorn.run(
        create_app(_settings),
        host=_settings.host,
        port=_settings.port,
        log_level=_settings.log_level.lower(),
    )

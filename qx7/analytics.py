# FILE: qx7/analytics.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .errors import ErrorKind
from .exporter import Qx7PrometheusExporter
from .logging import id_prefix

logger = logging.getLogger(__name__)

EVENT_NAME = "filter-tag"


def build_event(
    rockman_id: Optional[str],
    qx7_id: str,
    event: str,
    persistence_method: str,
) -> Dict[str, Any]:
    return {
        "utm_cdn": rockman_id or "",
        "event_name": EVENT_NAME,
        "event_args": {
            "id": qx7_id,
            "other_info": event,
            "persistence_method": persistence_method,
        },
    }


class AnalyticsClient:
    """
    Fire-and-forget event sink.

    `send_event` never raises: delivery failures are logged and counted,
    and the caller's response is never delayed by them (handlers schedule
    it as a background task).
    """

    def __init__(
        self,
        url: str,
        *,
        enabled: bool = True,
        timeout_s: float = 5.0,
        exporter: Optional[Qx7PrometheusExporter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.enabled = bool(enabled)
        self.timeout_s = float(timeout_s)
        self.exporter = exporter
        self._transport = transport

    async def send_event(
        self,
        rockman_id: Optional[str],
        qx7_id: Optional[str],
        event: str,
        persistence_method: str,
    ) -> bool:
        if not self.enabled:
            return False
        if not qx7_id:
            logger.debug("analytics event %s skipped: no visitor id", event)
            return False

        payload = build_event(rockman_id, qx7_id, event, str(persistence_method))
        timeout = httpx.Timeout(self.timeout_s, connect=min(self.timeout_s, 5.0))
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                resp = await client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning(
                "analytics event %s failed: %s",
                event,
                exc.__class__.__name__,
                extra={"id_prefix": id_prefix(qx7_id), "error_kind": ErrorKind.TELEMETRY.value},
            )
            self._count_failure("transport")
            return False

        if resp.status_code >= 400:
            logger.warning(
                "analytics event %s rejected with %d",
                event,
                resp.status_code,
                extra={"id_prefix": id_prefix(qx7_id), "error_kind": ErrorKind.TELEMETRY.value},
            )
            self._count_failure("status")
            return False
        return True

    def _count_failure(self, reason: str) -> None:
        if self.exporter is not None:
            self.exporter.record_analytics_failure(reason)


__all__ = ["AnalyticsClient", "build_event", "EVENT_NAME"]

# FILE: qx7/clearing.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Tuple

from .browser import BrowsingContext
from .storage import StorageOrchestrator

logger = logging.getLogger(__name__)

ACTIVE_SESSION_KEY = "active-session"
SESSION_START_KEY = "session-start-time"

#: Absolute number of positive probes that flags a wipe. Not a proportion:
#: adding probes must not silently change sensitivity.
CLEARED_THRESHOLD = 2


@dataclass(frozen=True)
class ClearingReport:
    data_cleared: bool
    confidence: float
    checks: Tuple[bool, ...]
    cleared_count: int
    total_checks: int

    def as_dict(self) -> dict:
        return {
            "dataCleared": self.data_cleared,
            "confidence": self.confidence,
            "checks": list(self.checks),
            "clearedCount": self.cleared_count,
            "totalChecks": self.total_checks,
        }


class DataClearingDetector:
    """
    Estimate whether client state was wiped since the previous visit.

    Each probe answers "looks cleared?" independently; a probe that raises
    counts as cleared. The worker probe runs only when the context has a
    background worker registered. After probing, fresh session markers are
    written so the next detection starts from a known state.
    """

    def __init__(self, context: BrowsingContext, orchestrator: StorageOrchestrator) -> None:
        self.context = context
        self.orchestrator = orchestrator

    # ---- probes ----------------------------------------------------------

    async def _no_stored_id(self) -> bool:
        return (await self.orchestrator.read()) is None

    async def _no_session_marker(self) -> bool:
        return not self.context.session_storage.get_item(ACTIVE_SESSION_KEY)

    async def _no_session_start(self) -> bool:
        return not self.context.local_storage.get_item(SESSION_START_KEY)

    async def _cache_empty(self) -> bool:
        return len(await self.context.cache.keys()) == 0

    async def _worker_silent(self) -> bool:
        return not await self.context.worker.ping()

    def _probes(self) -> List[Tuple[str, Callable[[], Awaitable[bool]]]]:
        probes: List[Tuple[str, Callable[[], Awaitable[bool]]]] = [
            ("stored_id", self._no_stored_id),
            ("session_marker", self._no_session_marker),
            ("session_start", self._no_session_start),
            ("request_cache", self._cache_empty),
        ]
        if self.context.worker is not None:
            probes.append(("worker", self._worker_silent))
        return probes

    # ---- public API --------------------------------------------------------

    async def detect(self) -> ClearingReport:
        checks: List[bool] = []
        for name, probe in self._probes():
            try:
                cleared = bool(await probe())
            except Exception:
                logger.debug("clearing probe %s raised; counting as cleared", name, exc_info=True)
                cleared = True
            checks.append(cleared)

        self._refresh_markers()

        cleared_count = sum(1 for c in checks if c)
        total = len(checks)
        report = ClearingReport(
            data_cleared=cleared_count >= CLEARED_THRESHOLD,
            confidence=cleared_count / total if total else 0.0,
            checks=tuple(checks),
            cleared_count=cleared_count,
            total_checks=total,
        )
        logger.debug(
            "clearing detection: %d/%d probes positive",
            cleared_count,
            total,
            extra={"data_cleared": report.data_cleared},
        )
        return report

    def _refresh_markers(self) -> None:
        try:
            self.context.session_storage.set_item(ACTIVE_SESSION_KEY, "active")
        except Exception:
            logger.debug("could not write %s marker", ACTIVE_SESSION_KEY, exc_info=True)
        try:
            if not self.context.local_storage.get_item(SESSION_START_KEY):
                self.context.local_storage.set_item(SESSION_START_KEY, str(self.context.clock()))
        except Exception:
            logger.debug("could not write %s marker", SESSION_START_KEY, exc_info=True)


__all__ = ["ClearingReport", "DataClearingDetector", "CLEARED_THRESHOLD"]

# FILE: qx7/client.py
"""
Client-side fetch-and-persist orchestration.

`IdentityClient.acquire_identity()` is what a page runs on load:

  1. read the stored id and run the data-clearing heuristic concurrently;
  2. send both (plus privacy hints) to onboarding-step1;
  3. validate the returned id, persist it to every storage tier and push it
     to cooperating contexts (skipped in incognito);
  4. request the onboarding-step2 pixel, adopting any id it returns;
  5. report the clearing verdict and a storage health rating.

Network failures are retried with exponential backoff. When every attempt
fails the caller gets a degraded result with no id: the client never
invents an identifier on its own.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple

import httpx

from .browser import BrowsingContext
from .clearing import ClearingReport, DataClearingDetector
from .errors import ErrorKind, IdentityFetchError
from .storage import DEFAULT_TTL_MS, StorageOrchestrator, WriteReport, make_orchestrator
from .sync import SyncBridge
from .validator import is_valid_identifier

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class ClientConfig:
    base_url: str = "http://127.0.0.1:3000"
    base_path: str = "/api/v1/estore"
    rockman_id: str = "1234567890"

    # Retry policy: attempt n failing sleeps 2**n * backoff_unit_s seconds.
    max_retries: int = 3
    backoff_unit_s: float = 1.0

    ttl_ms: int = DEFAULT_TTL_MS
    timeout_s: float = 10.0
    connect_timeout_s: float = 5.0

    # Origins the sync bridge exchanges messages with; None = own origin only.
    allowed_origins: Optional[Tuple[str, ...]] = None

    def endpoint(self, name: str) -> str:
        return self.base_url.rstrip("/") + self.base_path.rstrip("/") + "/" + name


@dataclass(frozen=True)
class IdentityPayload:
    qx7_id: str
    persistence_method: Optional[str]
    is_returning: bool

    @classmethod
    def from_json(cls, doc: Any) -> "IdentityPayload":
        if not isinstance(doc, dict):
            raise IdentityFetchError("identity response is not an object")
        qx7_id = doc.get("qx7Id")
        if not is_valid_identifier(qx7_id):
            raise IdentityFetchError("identity response carries an invalid id")
        return cls(
            qx7_id=qx7_id,
            persistence_method=doc.get("persistenceMethod"),
            is_returning=bool(doc.get("isReturning")),
        )


@dataclass
class AcquireResult:
    data_cleared: bool
    data: Optional[IdentityPayload]
    confidence: float
    storage_health: str
    attempts: int = 1
    error_kind: Optional[ErrorKind] = None
    write_report: Optional[WriteReport] = None
    clearing: Optional[ClearingReport] = field(default=None, repr=False)

    @property
    def degraded(self) -> bool:
        return self.data is None

    @property
    def qx7_id(self) -> Optional[str]:
        return self.data.qx7_id if self.data else None


class IdentityClient:
    def __init__(
        self,
        context: BrowsingContext,
        *,
        config: Optional[ClientConfig] = None,
        orchestrator: Optional[StorageOrchestrator] = None,
        detector: Optional[DataClearingDetector] = None,
        bridge: Optional[SyncBridge] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.context = context
        self.config = config or ClientConfig()
        self.orchestrator = orchestrator or make_orchestrator(context, ttl_ms=self.config.ttl_ms)
        self.detector = detector or DataClearingDetector(context, self.orchestrator)
        self.bridge = bridge or SyncBridge(
            context,
            self.orchestrator,
            self.detector,
            allowed_origins=self.config.allowed_origins,
        )
        self._http = http_client
        self._sleep = sleep

    # ---- transport -------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http is not None:
            yield self._http
            return
        timeout = httpx.Timeout(self.config.timeout_s, connect=self.config.connect_timeout_s)
        async with httpx.AsyncClient(timeout=timeout) as client:
            yield client

    async def _get(self, name: str, headers: Dict[str, str]) -> httpx.Response:
        async with self._client() as client:
            return await client.get(
                self.config.endpoint(name),
                headers=headers,
                params={"rockmanId": self.config.rockman_id},
            )

    @property
    def _incognito(self) -> bool:
        return bool(self.context.privacy and self.context.privacy.is_incognito)

    # ---- request shaping -------------------------------------------------

    def build_headers(self, stored_id: Optional[str], clearing: ClearingReport) -> Dict[str, str]:
        headers: Dict[str, str] = {
            "X-Data-Cleared": "true" if clearing.data_cleared else "false",
            "X-Data-Clearing-Confidence": str(clearing.confidence),
        }
        if stored_id:
            headers["X-Qx7-Id"] = stored_id
        privacy = self.context.privacy
        if privacy is not None:
            headers["X-Incognito-Mode"] = "true" if privacy.is_incognito else "false"
            headers["X-Limited-Storage"] = "true" if privacy.has_limited_storage else "false"
            headers["X-Session-Only"] = "true" if privacy.session_only else "false"
        if self.context.cognito_user_id:
            headers["X-Cognito-User-Id"] = self.context.cognito_user_id
            headers["X-Returning-From-Auth"] = "true" if self.context.returning_from_auth else "false"
        return headers

    # ---- acquire -----------------------------------------------------------

    async def _fetch_identity(self, headers: Dict[str, str]) -> IdentityPayload:
        try:
            response = await self._get("onboarding-step1", headers)
        except httpx.HTTPError as exc:
            raise IdentityFetchError(f"request failed: {exc.__class__.__name__}") from exc
        if not response.is_success:
            raise IdentityFetchError(f"identity endpoint returned {response.status_code}")
        try:
            doc = response.json()
        except ValueError as exc:
            raise IdentityFetchError("identity response is not JSON") from exc
        return IdentityPayload.from_json(doc)

    async def _attempt(self, attempt: int) -> AcquireResult:
        stored_id, clearing = await asyncio.gather(
            self.orchestrator.read(), self.detector.detect()
        )
        payload = await self._fetch_identity(self.build_headers(stored_id, clearing))

        report: Optional[WriteReport] = None
        if not self._incognito:
            report = await self.orchestrator.write_report(payload.qx7_id, ttl_ms=self.config.ttl_ms)
            await self.bridge.sync_with_other_contexts(payload.qx7_id)
        self.context.qx7_id = payload.qx7_id

        await self.update_identity_image()

        return AcquireResult(
            data_cleared=clearing.data_cleared,
            data=payload,
            confidence=clearing.confidence,
            storage_health=await self.orchestrator.storage_health(),
            attempts=attempt,
            write_report=report,
            clearing=clearing,
        )

    async def acquire_identity(self) -> AcquireResult:
        max_retries = max(1, int(self.config.max_retries))
        for attempt in range(1, max_retries + 1):
            try:
                return await self._attempt(attempt)
            except IdentityFetchError as exc:
                logger.warning("identity fetch attempt %d/%d failed: %s", attempt, max_retries, exc)
                if attempt < max_retries:
                    await self._sleep((2 ** attempt) * self.config.backoff_unit_s)

        logger.error("identity fetch gave up after %d attempts", max_retries)
        return AcquireResult(
            data_cleared=True,
            data=None,
            confidence=0.0,
            storage_health="degraded",
            attempts=max_retries,
            error_kind=ErrorKind.NETWORK,
        )

    async def update_identity_image(self) -> bool:
        """
        Request the step-2 pixel for the current id and adopt the id the
        server answers with. Returns True when an id was adopted.
        """
        current = self.context.qx7_id or await self.orchestrator.read()
        headers = {"X-Qx7-Id": current} if current else {}
        try:
            response = await self._get("onboarding-step2", headers)
        except httpx.HTTPError as exc:
            logger.warning("identity pixel request failed: %s", exc.__class__.__name__)
            return False
        if not response.is_success:
            logger.warning("identity pixel returned %d", response.status_code)
            return False
        returned = response.headers.get("x-qx7-id")
        if not is_valid_identifier(returned):
            return False
        if not self._incognito and returned != current:
            await self.orchestrator.write(returned, ttl_ms=self.config.ttl_ms)
        self.context.qx7_id = returned
        return True

    async def start(self) -> AcquireResult:
        """Page bootstrap: acquire, start listening, announce to the parent."""
        result = await self.acquire_identity()
        self.bridge.install()
        await self.bridge.announce(
            result.qx7_id or self.context.qx7_id,
            is_new_session=result.data_cleared,
            persistence_method=result.data.persistence_method if result.data else None,
        )
        return result


__all__ = [
    "ClientConfig",
    "IdentityPayload",
    "AcquireResult",
    "IdentityClient",
]

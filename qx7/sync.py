# FILE: qx7/sync.py
"""
Cross-context sync bridge.

Cooperating browsing contexts (a page, its parent, its frames) keep the
same visitor id by exchanging small typed messages:

    request-qx7-id      peer asks for our id          -> reply qx7-id
    qx7-id              informational announcement
    sync-qx7-id         peer pushes an id             -> persist + stamp
    SYNC_QX7_ID         broadcast push                -> persist
    check-data-cleared  peer asks for the heuristic   -> reply data-cleared-status

Messages are accepted only from allow-listed origins (default: our own) and
outbound posts only target allow-listed origins. Payload ids pass the
validator before anything is persisted.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .browser import BrowsingContext, MessageEvent
from .clearing import DataClearingDetector
from .storage import RECORD_VERSION, StorageOrchestrator
from .validator import is_valid_identifier

logger = logging.getLogger(__name__)

MSG_REQUEST_ID = "request-qx7-id"
MSG_ID = "qx7-id"
MSG_SYNC_ID = "sync-qx7-id"
MSG_BROADCAST_SYNC = "SYNC_QX7_ID"
MSG_CHECK_CLEARED = "check-data-cleared"
MSG_CLEARED_STATUS = "data-cleared-status"

SYNC_TIMESTAMP_KEY = "qx7-sync-timestamp"


class BridgeOutcome(str, Enum):
    IGNORED = "ignored"
    REJECTED_ORIGIN = "rejected-origin"
    INVALID_PAYLOAD = "invalid-payload"
    RECEIVED = "received"
    REPLIED = "replied"
    PERSISTED = "persisted"
    PERSIST_FAILED = "persist-failed"
    ERROR = "error"


class SyncBridge:
    def __init__(
        self,
        context: BrowsingContext,
        orchestrator: StorageOrchestrator,
        detector: DataClearingDetector,
        *,
        allowed_origins: Optional[Iterable[str]] = None,
    ) -> None:
        self.context = context
        self.orchestrator = orchestrator
        self.detector = detector
        self.allowed_origins = (
            tuple(allowed_origins) if allowed_origins is not None else (context.origin,)
        )
        self._handlers: Dict[str, Callable[[MessageEvent, Dict[str, Any]], Awaitable[BridgeOutcome]]] = {
            MSG_REQUEST_ID: self._on_request_id,
            MSG_ID: self._on_id,
            MSG_SYNC_ID: self._on_sync_id,
            MSG_BROADCAST_SYNC: self._on_broadcast_sync,
            MSG_CHECK_CLEARED: self._on_check_cleared,
        }
        self.last_peer_id: Optional[str] = None

    def origin_allowed(self, origin: str) -> bool:
        return "*" in self.allowed_origins or origin in self.allowed_origins

    def install(self) -> None:
        self.context.add_message_listener(self.handle_message)

    def uninstall(self) -> None:
        self.context.remove_message_listener(self.handle_message)

    # ---- inbound ---------------------------------------------------------

    async def handle_message(self, event: MessageEvent) -> BridgeOutcome:
        """Dispatch one inbound message. Never raises."""
        try:
            return await self._dispatch(event)
        except Exception:
            logger.exception("sync bridge failed to handle message")
            return BridgeOutcome.ERROR

    async def _dispatch(self, event: MessageEvent) -> BridgeOutcome:
        if not self.origin_allowed(event.origin):
            logger.debug("dropping message from non-allowed origin %s", event.origin)
            return BridgeOutcome.REJECTED_ORIGIN
        data = event.data
        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            return BridgeOutcome.IGNORED
        handler = self._handlers.get(data["type"])
        if handler is None:
            return BridgeOutcome.IGNORED
        return await handler(event, data)

    async def _reply(self, event: MessageEvent, payload: Dict[str, Any]) -> BridgeOutcome:
        if event.source is None:
            return BridgeOutcome.IGNORED
        await event.source.post_message(payload, event.origin, source=self.context)
        return BridgeOutcome.REPLIED

    async def _on_request_id(self, event: MessageEvent, data: Dict[str, Any]) -> BridgeOutcome:
        current = self.context.qx7_id or await self.orchestrator.read() or ""
        return await self._reply(
            event,
            {
                "type": MSG_ID,
                "qx7Id": current,
                "timestamp": self.context.clock(),
                "source": self.context.origin,
            },
        )

    async def _on_id(self, event: MessageEvent, data: Dict[str, Any]) -> BridgeOutcome:
        peer_id = data.get("qx7Id")
        if is_valid_identifier(peer_id):
            self.last_peer_id = peer_id
        return BridgeOutcome.RECEIVED

    async def _persist(self, qx7_id: str) -> bool:
        # The peer's id is adopted even when no tier accepts the write.
        self.context.qx7_id = qx7_id
        return await self.orchestrator.write(qx7_id)

    async def _on_sync_id(self, event: MessageEvent, data: Dict[str, Any]) -> BridgeOutcome:
        qx7_id = data.get("qx7Id")
        if not is_valid_identifier(qx7_id):
            return BridgeOutcome.INVALID_PAYLOAD
        if not await self._persist(qx7_id):
            return BridgeOutcome.PERSIST_FAILED
        try:
            self.context.local_storage.set_item(SYNC_TIMESTAMP_KEY, str(self.context.clock()))
        except Exception:
            logger.debug("could not record %s", SYNC_TIMESTAMP_KEY, exc_info=True)
        return BridgeOutcome.PERSISTED

    async def _on_broadcast_sync(self, event: MessageEvent, data: Dict[str, Any]) -> BridgeOutcome:
        qx7_id = data.get("qx7Id")
        if not is_valid_identifier(qx7_id):
            return BridgeOutcome.INVALID_PAYLOAD
        if not await self._persist(qx7_id):
            return BridgeOutcome.PERSIST_FAILED
        return BridgeOutcome.PERSISTED

    async def _on_check_cleared(self, event: MessageEvent, data: Dict[str, Any]) -> BridgeOutcome:
        report = await self.detector.detect()
        return await self._reply(
            event,
            {
                "type": MSG_CLEARED_STATUS,
                "dataCleared": report.data_cleared,
                "confidence": report.confidence,
                "timestamp": self.context.clock(),
            },
        )

    # ---- outbound --------------------------------------------------------

    def _peers(self) -> List[BrowsingContext]:
        peers: List[BrowsingContext] = []
        if self.context.parent is not None:
            peers.append(self.context.parent)
        peers.extend(self.context.frames)
        return peers

    async def _post(self, target: BrowsingContext, payload: Dict[str, Any]) -> bool:
        if not self.origin_allowed(target.origin):
            logger.debug("not posting to non-allowed origin %s", target.origin)
            return False
        return await target.post_message(payload, target.origin, source=self.context)

    async def sync_with_other_contexts(self, qx7_id: str) -> int:
        """
        Push `qx7_id` to the parent and every child frame. Returns the
        number of contexts it was delivered to.
        """
        payload = {
            "type": MSG_BROADCAST_SYNC,
            "qx7Id": qx7_id,
            "timestamp": self.context.clock(),
            "source": self.context.origin,
        }
        delivered = 0
        for peer in self._peers():
            try:
                if await self._post(peer, payload):
                    delivered += 1
            except Exception:
                logger.warning("sync to %s failed", peer.origin, exc_info=True)
        return delivered

    async def announce(
        self,
        qx7_id: Optional[str],
        *,
        is_new_session: bool,
        persistence_method: Optional[str],
    ) -> bool:
        """Tell the parent (when framed) which id this page settled on."""
        parent = self.context.parent
        if parent is None:
            return False
        return await self._post(
            parent,
            {
                "type": MSG_ID,
                "qx7Id": qx7_id or "",
                "isNewSession": bool(is_new_session),
                "persistenceMethod": persistence_method,
                "enhanced": True,
                "version": RECORD_VERSION,
                "timestamp": self.context.clock(),
            },
        )


__all__ = ["BridgeOutcome", "SyncBridge", "SYNC_TIMESTAMP_KEY"]

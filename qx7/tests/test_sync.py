# qx7/tests/test_sync.py
import pytest

from qx7.browser import MessageEvent
from qx7.clearing import DataClearingDetector
from qx7.storage import make_orchestrator
from qx7.sync import SYNC_TIMESTAMP_KEY, BridgeOutcome, SyncBridge

ID_A = "0123456789abcdef0123456789abcdef"
ORIGIN = "https://shop.example"
EVIL = "https://evil.example"


def _bridge(ctx, **kwargs):
    orch = make_orchestrator(ctx)
    return SyncBridge(ctx, orch, DataClearingDetector(ctx, orch), **kwargs)


def _inbox(ctx):
    seen = []
    ctx.add_message_listener(lambda event: seen.append(event))
    return seen


@pytest.mark.asyncio
async def test_request_id_gets_reply(make_context):
    parent = make_context()
    child = parent.attach_frame(make_context())
    bridge = _bridge(child)
    child.qx7_id = ID_A
    inbox = _inbox(parent)

    outcome = await bridge.handle_message(
        MessageEvent({"type": "request-qx7-id"}, ORIGIN, source=parent)
    )
    assert outcome is BridgeOutcome.REPLIED
    assert len(inbox) == 1
    assert inbox[0].data["type"] == "qx7-id"
    assert inbox[0].data["qx7Id"] == ID_A
    assert inbox[0].origin == ORIGIN


@pytest.mark.asyncio
async def test_request_id_falls_back_to_storage(make_context):
    parent = make_context()
    child = make_context()
    bridge = _bridge(child)
    await bridge.orchestrator.write(ID_A)
    inbox = _inbox(parent)
    await bridge.handle_message(MessageEvent({"type": "request-qx7-id"}, ORIGIN, source=parent))
    assert inbox[0].data["qx7Id"] == ID_A


@pytest.mark.asyncio
async def test_sync_message_persists_and_stamps(make_context, clock):
    ctx = make_context()
    bridge = _bridge(ctx)
    outcome = await bridge.handle_message(
        MessageEvent({"type": "sync-qx7-id", "qx7Id": ID_A}, ORIGIN)
    )
    assert outcome is BridgeOutcome.PERSISTED
    assert await bridge.orchestrator.read() == ID_A
    assert ctx.qx7_id == ID_A
    assert ctx.local_storage.get_item(SYNC_TIMESTAMP_KEY) == str(clock())


@pytest.mark.asyncio
async def test_broadcast_sync_persists(make_context):
    ctx = make_context()
    bridge = _bridge(ctx)
    outcome = await bridge.handle_message(
        MessageEvent({"type": "SYNC_QX7_ID", "qx7Id": ID_A}, ORIGIN)
    )
    assert outcome is BridgeOutcome.PERSISTED
    assert await bridge.orchestrator.read() == ID_A
    assert ctx.local_storage.get_item(SYNC_TIMESTAMP_KEY) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [None, "", "xyz", 42, "0123"])
async def test_sync_rejects_invalid_payload(make_context, payload):
    ctx = make_context()
    bridge = _bridge(ctx)
    outcome = await bridge.handle_message(
        MessageEvent({"type": "sync-qx7-id", "qx7Id": payload}, ORIGIN)
    )
    assert outcome is BridgeOutcome.INVALID_PAYLOAD
    assert await bridge.orchestrator.read() is None


@pytest.mark.asyncio
async def test_unknown_and_malformed_messages_are_ignored(make_context):
    bridge = _bridge(make_context())
    assert await bridge.handle_message(MessageEvent({"type": "hello"}, ORIGIN)) is BridgeOutcome.IGNORED
    assert await bridge.handle_message(MessageEvent("sync-qx7-id", ORIGIN)) is BridgeOutcome.IGNORED
    assert await bridge.handle_message(MessageEvent({"qx7Id": ID_A}, ORIGIN)) is BridgeOutcome.IGNORED


@pytest.mark.asyncio
async def test_foreign_origin_is_rejected(make_context):
    ctx = make_context()
    bridge = _bridge(ctx)
    outcome = await bridge.handle_message(
        MessageEvent({"type": "sync-qx7-id", "qx7Id": ID_A}, EVIL)
    )
    assert outcome is BridgeOutcome.REJECTED_ORIGIN
    assert await bridge.orchestrator.read() is None


@pytest.mark.asyncio
async def test_wildcard_allow_list_accepts_any_origin(make_context):
    bridge = _bridge(make_context(), allowed_origins=("*",))
    outcome = await bridge.handle_message(
        MessageEvent({"type": "sync-qx7-id", "qx7Id": ID_A}, EVIL)
    )
    assert outcome is BridgeOutcome.PERSISTED


@pytest.mark.asyncio
async def test_check_data_cleared_replies_with_verdict(make_context):
    parent = make_context()
    child = make_context()
    bridge = _bridge(child)
    inbox = _inbox(parent)
    outcome = await bridge.handle_message(
        MessageEvent({"type": "check-data-cleared"}, ORIGIN, source=parent)
    )
    assert outcome is BridgeOutcome.REPLIED
    reply = inbox[0].data
    assert reply["type"] == "data-cleared-status"
    assert reply["dataCleared"] is True
    assert reply["confidence"] == 1.0


@pytest.mark.asyncio
async def test_peer_announcement_is_recorded(make_context):
    bridge = _bridge(make_context())
    outcome = await bridge.handle_message(MessageEvent({"type": "qx7-id", "qx7Id": ID_A}, ORIGIN))
    assert outcome is BridgeOutcome.RECEIVED
    assert bridge.last_peer_id == ID_A


@pytest.mark.asyncio
async def test_handler_failure_never_raises(make_context):
    ctx = make_context()
    bridge = _bridge(ctx)

    async def _boom():
        raise RuntimeError("detector exploded")

    bridge.detector.detect = _boom
    outcome = await bridge.handle_message(MessageEvent({"type": "check-data-cleared"}, ORIGIN))
    assert outcome is BridgeOutcome.ERROR


@pytest.mark.asyncio
async def test_broadcast_reaches_parent_and_frames(make_context):
    top = make_context()
    page = top.attach_frame(make_context())
    frame = page.attach_frame(make_context())
    foreign = page.attach_frame(make_context(EVIL))

    top_bridge = _bridge(top)
    frame_bridge = _bridge(frame)
    top_bridge.install()
    frame_bridge.install()
    foreign_inbox = _inbox(foreign)

    delivered = await _bridge(page).sync_with_other_contexts(ID_A)
    assert delivered == 2
    assert foreign_inbox == []
    assert await top_bridge.orchestrator.read() == ID_A
    assert await frame_bridge.orchestrator.read() == ID_A


@pytest.mark.asyncio
async def test_announce_posts_to_parent_only(make_context):
    top = make_context()
    page = top.attach_frame(make_context())
    inbox = _inbox(top)

    sent = await _bridge(page).announce(ID_A, is_new_session=False, persistence_method="localStorage")
    assert sent is True
    msg = inbox[0].data
    assert msg["type"] == "qx7-id"
    assert msg["qx7Id"] == ID_A
    assert msg["isNewSession"] is False
    assert msg["persistenceMethod"] == "localStorage"
    assert msg["enhanced"] is True

    assert await _bridge(top).announce(ID_A, is_new_session=True, persistence_method=None) is False


@pytest.mark.asyncio
@pytest.mark.parametrize("message_type", ["sync-qx7-id", "SYNC_QX7_ID"])
async def test_sync_adopts_id_when_every_tier_is_blocked(make_context, message_type):
    ctx = make_context(database=False, worker=False)
    ctx.local_storage.fail_with = OSError("blocked")
    ctx.session_storage.fail_with = OSError("blocked")
    ctx.cookies.fail_with = OSError("blocked")
    ctx.qx7_id = "f" * 32
    bridge = _bridge(ctx)

    outcome = await bridge.handle_message(MessageEvent({"type": message_type, "qx7Id": ID_A}, ORIGIN))
    assert outcome is BridgeOutcome.PERSIST_FAILED
    assert ctx.qx7_id == ID_A

    parent = make_context()
    inbox = _inbox(parent)
    await bridge.handle_message(MessageEvent({"type": "request-qx7-id"}, ORIGIN, source=parent))
    assert inbox[0].data["qx7Id"] == ID_A

# qx7/tests/test_client.py
import httpx
import pytest

from qx7.browser import PrivacyHints
from qx7.client import ClientConfig, IdentityClient
from qx7.clearing import ClearingReport
from qx7.config import Settings
from qx7.errors import ErrorKind
from qx7.service_http import PIXEL_GIF, create_app
from qx7.storage import BackendKind

ID_A = "0123456789abcdef0123456789abcdef"
ID_B = "fedcba9876543210fedcba9876543210"


def _asgi_client():
    app = create_app(Settings(analytics_enabled=False))
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app))


def _mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class _Sleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def _pixel(qx7_id):
    return httpx.Response(200, content=PIXEL_GIF, headers={"x-qx7-id": qx7_id})


@pytest.mark.asyncio
async def test_first_visit_then_returning_visit(make_context):
    ctx = make_context()
    async with _asgi_client() as http:
        client = IdentityClient(ctx, http_client=http)
        first = await client.acquire_identity()
        assert not first.degraded
        assert first.data_cleared is True
        assert first.data.persistence_method == "new"
        assert first.data.is_returning is False
        assert first.write_report.ok
        assert first.storage_health == "Excellent"
        assert ctx.qx7_id == first.qx7_id

        second = await IdentityClient(ctx, http_client=http).acquire_identity()
        assert second.qx7_id == first.qx7_id
        assert second.data_cleared is False
        assert second.data.is_returning is True
        assert second.data.persistence_method == "localStorage"


@pytest.mark.asyncio
async def test_incognito_does_not_persist(make_context):
    ctx = make_context(privacy=PrivacyHints(is_incognito=True))
    async with _asgi_client() as http:
        client = IdentityClient(ctx, http_client=http)
        result = await client.acquire_identity()
    assert result.data.persistence_method == "incognito-random"
    assert result.write_report is None
    assert ctx.qx7_id == result.qx7_id
    assert await client.orchestrator.read() is None


@pytest.mark.asyncio
async def test_retries_with_backoff_then_degrades(make_context):
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(503)

    sleeps = _Sleeps()
    ctx = make_context()
    async with _mock_client(handler) as http:
        client = IdentityClient(ctx, http_client=http, sleep=sleeps)
        result = await client.acquire_identity()

    assert sleeps.calls == [2.0, 4.0]
    assert len(calls) == 3
    assert result.degraded
    assert result.qx7_id is None
    assert result.attempts == 3
    assert result.error_kind is ErrorKind.NETWORK
    assert result.data_cleared is True
    assert result.storage_health == "degraded"
    assert await client.orchestrator.read() is None


@pytest.mark.asyncio
async def test_retry_then_success(make_context):
    step1_calls = []

    def handler(request):
        if request.url.path.endswith("onboarding-step1"):
            step1_calls.append(request)
            if len(step1_calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(
                200, json={"qx7Id": ID_A, "persistenceMethod": "new", "isReturning": False}
            )
        return _pixel(ID_A)

    sleeps = _Sleeps()
    ctx = make_context()
    async with _mock_client(handler) as http:
        client = IdentityClient(ctx, http_client=http, sleep=sleeps)
        result = await client.acquire_identity()

    assert sleeps.calls == [2.0]
    assert result.attempts == 2
    assert result.qx7_id == ID_A
    assert step1_calls[-1].url.params["rockmanId"] == "1234567890"


@pytest.mark.asyncio
async def test_invalid_server_id_counts_as_failure(make_context):
    def handler(request):
        return httpx.Response(200, json={"qx7Id": "not-hex", "persistenceMethod": "new"})

    ctx = make_context()
    config = ClientConfig(max_retries=1)
    async with _mock_client(handler) as http:
        client = IdentityClient(ctx, config=config, http_client=http, sleep=_Sleeps())
        result = await client.acquire_identity()
    assert result.degraded
    assert result.attempts == 1
    assert await client.orchestrator.read() is None


@pytest.mark.asyncio
async def test_pixel_id_is_adopted(make_context):
    def handler(request):
        if request.url.path.endswith("onboarding-step1"):
            return httpx.Response(200, json={"qx7Id": ID_A, "persistenceMethod": "new"})
        return _pixel(ID_B)

    ctx = make_context()
    async with _mock_client(handler) as http:
        client = IdentityClient(ctx, http_client=http)
        await client.acquire_identity()
    assert ctx.qx7_id == ID_B
    assert await client.orchestrator.read() == ID_B


@pytest.mark.asyncio
async def test_invalid_pixel_id_is_ignored(make_context):
    def handler(request):
        if request.url.path.endswith("onboarding-step1"):
            return httpx.Response(200, json={"qx7Id": ID_A, "persistenceMethod": "new"})
        return _pixel("bogus")

    ctx = make_context()
    async with _mock_client(handler) as http:
        client = IdentityClient(ctx, http_client=http)
        await client.acquire_identity()
        assert await client.update_identity_image() is False
    assert ctx.qx7_id == ID_A


def test_request_headers(make_context):
    ctx = make_context(
        privacy=PrivacyHints(has_limited_storage=True),
        cognito_user_id="user-7",
        returning_from_auth=True,
    )
    client = IdentityClient(ctx)
    clearing = ClearingReport(
        data_cleared=False, confidence=0.2, checks=(True, False, False, False, False),
        cleared_count=1, total_checks=5,
    )
    headers = client.build_headers(ID_A, clearing)
    assert headers == {
        "X-Data-Cleared": "false",
        "X-Data-Clearing-Confidence": "0.2",
        "X-Qx7-Id": ID_A,
        "X-Incognito-Mode": "false",
        "X-Limited-Storage": "true",
        "X-Session-Only": "false",
        "X-Cognito-User-Id": "user-7",
        "X-Returning-From-Auth": "true",
    }
    assert "X-Qx7-Id" not in client.build_headers(None, clearing)


@pytest.mark.asyncio
async def test_start_syncs_and_announces_to_parent(make_context):
    top = make_context()
    page = top.attach_frame(make_context())
    inbox = []
    top.add_message_listener(lambda event: inbox.append(event.data))

    async with _asgi_client() as http:
        result = await IdentityClient(page, http_client=http).start()

    assert [m["type"] for m in inbox] == ["SYNC_QX7_ID", "qx7-id"]
    assert inbox[1]["qx7Id"] == result.qx7_id
    assert inbox[1]["isNewSession"] is True
    assert inbox[1]["persistenceMethod"] == "new"


@pytest.mark.asyncio
async def test_write_report_lists_unavailable_worker(make_context):
    ctx = make_context(worker=False)
    async with _asgi_client() as http:
        result = await IdentityClient(ctx, http_client=http).acquire_identity()
    assert result.write_report.ok
    assert result.write_report.failed == (BackendKind.WORKER,)


def test_endpoint_joins_base_path():
    config = ClientConfig(base_url="http://id.example/", base_path="/api/v1/estore/")
    assert config.endpoint("onboarding-step1") == "http://id.example/api/v1/estore/onboarding-step1"

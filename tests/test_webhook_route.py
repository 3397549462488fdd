import httpx
import pytest

from padbridge.api.app import create_app
from padbridge.channels.monitor import WEBHOOK_PATH_PREFIX, WebhookRegistry, webhook_path


@pytest.fixture
def registry() -> WebhookRegistry:
    return WebhookRegistry()


@pytest.fixture
def received() -> list:
    return []


@pytest.fixture
async def client(registry, received):
    async def handler(payload) -> None:
        received.append(payload)

    registry.register("code-1", handler)
    app = create_app()
    app.state.webhook_registry = registry
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def test_post_is_acknowledged_and_processed(client, received) -> None:
    payload = {"AddMsgs": [{"content": "hi"}]}

    resp = await client.post(webhook_path("code-1"), json=payload)

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert received == [payload]


async def test_empty_body_is_an_empty_payload(client, received) -> None:
    resp = await client.post(webhook_path("code-1"), content=b"")

    assert resp.status_code == 200
    assert received == [{}]


async def test_non_post_is_405_with_allow_header(client) -> None:
    resp = await client.get(webhook_path("code-1"))

    assert resp.status_code == 405
    assert resp.headers["allow"] == "POST"
    assert resp.json() == {"error": "Method Not Allowed"}


async def test_invalid_json_is_400(client, received) -> None:
    resp = await client.post(webhook_path("code-1"), content=b"{not json")

    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid JSON"}
    assert received == []


async def test_unknown_token_is_404(client) -> None:
    resp = await client.post(f"{WEBHOOK_PATH_PREFIX}/nope", json={})
    assert resp.status_code == 404


async def test_handler_failure_still_acknowledged(registry, client) -> None:
    async def broken(payload) -> None:
        raise RuntimeError("pipeline exploded")

    registry.register("code-2", broken)

    resp = await client.post(webhook_path("code-2"), json={})

    assert resp.status_code == 200


async def test_unregister_removes_route(registry, client) -> None:
    async def handler(payload) -> None:
        pass

    unregister = registry.register("code-3", handler)
    unregister()

    resp = await client.post(webhook_path("code-3"), json={})
    assert resp.status_code == 404
    assert "code-3" not in registry


async def test_health_without_manager(client) -> None:
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["accounts"] == {}

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from padbridge.bus.events import MSG_TYPE_TEXT, InboundMessage
from padbridge.channels.accounts import ResolvedAccount, resolve_account
from padbridge.config.loader import config_from_dict
from padbridge.config.schema import Config

BOT = "wxid_bot"
GROUP = "123456@chatroom"


def make_config(channel: dict | None = None, **root) -> Config:
    section = {
        "serverUrl": "http://gw.local",
        "authcode": "code-1",
        "wxid": BOT,
        "dmPolicy": "open",
        "allowFrom": ["*"],
        "groupPolicy": "open",
    }
    section.update(channel or {})
    return config_from_dict({"channels": {"wechatpadpro": section}, **root})


def make_account(channel: dict | None = None, account_id: str | None = None) -> tuple[Config, ResolvedAccount]:
    cfg = make_config(channel)
    return cfg, resolve_account(cfg, account_id)


def make_message(
    text: str = "hello",
    sender_id: str = "wxid_alice",
    recipient_id: str = BOT,
    message_id: str = "m-1",
    group_id: str | None = None,
    msg_type: int = MSG_TYPE_TEXT,
    sender_name: str | None = None,
    timestamp: int = 1_700_000_000_000,
) -> InboundMessage:
    return InboundMessage(
        message_id=message_id,
        recipient_id=recipient_id,
        sender_id=sender_id,
        text=text,
        timestamp=timestamp,
        is_group=group_id is not None,
        sender_name=sender_name,
        group_id=group_id,
        msg_type=msg_type,
        raw_content=text,
    )


class FakeClock:
    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingSleep:
    """Awaitable stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class HeldSleep:
    """Sleep that parks every caller until ``release`` is set."""

    def __init__(self) -> None:
        self.calls: list[float] = []
        self.release = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await self.release.wait()


async def settle(predicate, rounds: int = 200) -> None:
    """Yield to the event loop until *predicate* holds (or give up)."""
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch, tmp_path):
    for key in (
        "PADBRIDGE_SERVER_URL",
        "PADBRIDGE_AUTHCODE",
        "PADBRIDGE_WXID",
        "PADBRIDGE_WEBHOOK_BASE_URL",
        "PADBRIDGE_DM_POLICY",
        "PADBRIDGE_ALLOW_FROM",
        "PADBRIDGE_TRIGGER_KEYWORDS",
        "PADBRIDGE_RESPONDER",
        "PADBRIDGE_MODEL",
        "PADBRIDGE_LLM_API_KEY",
        "PADBRIDGE_LLM_API_BASE",
        "PADBRIDGE_CONFIG_PATH",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("PADBRIDGE_STATE_DIR", str(tmp_path / "state"))
    from padbridge.settings import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class GatewayStub:
    """``httpx.MockTransport`` handler that records calls and answers per path."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[str, httpx.Response | Exception] = {}

    def json_bodies(self, path: str) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        answer = self.routes.get(request.url.path)
        if isinstance(answer, Exception):
            raise answer
        if answer is not None:
            return answer
        return httpx.Response(200, json={"Code": 0, "Success": True, "Data": {"NewMsgId": 42}})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def gateway() -> GatewayStub:
    return GatewayStub()

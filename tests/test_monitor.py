import asyncio
import random

import httpx
import pytest
from conftest import BOT, HeldSleep, RecordingSleep, make_config, settle

from padbridge.agent.responder import EchoResponder
from padbridge.api.app import create_app
from padbridge.channels.client import HEARTBEAT_PATH, SEND_TEXT_PATH, SYNC_PATH, WEBHOOK_SET_PATH
from padbridge.channels.errors import ConfigurationError
from padbridge.channels.monitor import AccountMonitor, MonitorManager, WebhookRegistry, resolve_webhook_base_url, webhook_path

NO_POLL = {"polling": {"enabled": False}, "humanDelay": False}


def _sync_payload(msg_id: str = "5001", text: str = "hello") -> dict:
    return {
        "AddMsgs": [{
            "new_msg_id": msg_id,
            "from_user_name": {"str": "wxid_alice"},
            "to_user_name": {"str": BOT},
            "msg_type": 1,
            "content": {"str": text},
        }]
    }


def _monitor(gateway, channel=None, registry=None, sleep=None, **kw) -> AccountMonitor:
    cfg = make_config({**NO_POLL, **(channel or {})}, **kw)
    return AccountMonitor(
        account_id="default",
        load_config=lambda: cfg,
        registry=registry if registry is not None else WebhookRegistry(),
        responder=EchoResponder(),
        http=gateway.client(),
        webhook_base_fallback="http://bridge.local:19001/",
        rng=random.Random(0),
        sleep=sleep or RecordingSleep(),
    )


class GatedSleep:
    """Returns immediately for the first *free* calls, then blocks until cancelled."""

    def __init__(self, free: int = 1) -> None:
        self.calls: list[float] = []
        self._free = free
        self._blocked = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if len(self.calls) > self._free:
            await self._blocked.wait()


def test_webhook_base_url_resolution() -> None:
    assert resolve_webhook_base_url(make_config({"webhookBaseUrl": "https://pub.example/"})) == "https://pub.example"
    assert resolve_webhook_base_url(make_config(), "http://fallback:1/") == "http://fallback:1"
    assert resolve_webhook_base_url(make_config()) == "http://127.0.0.1:19001"


async def test_start_registers_route_and_gateway(gateway) -> None:
    registry = WebhookRegistry()
    monitor = _monitor(gateway, registry=registry)

    await monitor.start()

    assert "code-1" in registry
    assert gateway.json_bodies(WEBHOOK_SET_PATH) == [
        {"syncMessageUrl": f"http://bridge.local:19001{webhook_path('code-1')}"}
    ]
    assert len(gateway.json_bodies(HEARTBEAT_PATH)) == 1
    assert monitor.status.running and monitor.status.connected
    await monitor.stop()


async def test_start_without_credentials_raises(gateway) -> None:
    monitor = _monitor(gateway, {"authcode": None})

    with pytest.raises(ConfigurationError):
        await monitor.start()
    assert not monitor.running


async def test_registration_failure_is_not_fatal(gateway) -> None:
    gateway.routes[WEBHOOK_SET_PATH] = httpx.Response(500, text="nope")
    gateway.routes[HEARTBEAT_PATH] = httpx.ConnectError("down")
    monitor = _monitor(gateway)

    await monitor.start()

    assert monitor.running
    await monitor.stop()


async def test_poll_once_dispatches_through_pipeline(gateway) -> None:
    gateway.routes[SYNC_PATH] = httpx.Response(200, json=_sync_payload())
    monitor = _monitor(gateway)
    await monitor.start()

    assert await monitor.poll_once() == 1
    assert await monitor.poll_once() == 0  # same message id again
    await monitor.pipeline.drain()

    sends = gateway.json_bodies(SEND_TEXT_PATH)
    assert [(b["ToWxid"], b["Content"]) for b in sends] == [("wxid_alice", "hello [AI]")]
    await monitor.stop()


async def test_webhook_and_poll_share_dedup(gateway) -> None:
    gateway.routes[SYNC_PATH] = httpx.Response(200, json=_sync_payload("7"))
    registry = WebhookRegistry()
    monitor = _monitor(gateway, registry=registry)
    await monitor.start()

    assert await registry.get("code-1")(_sync_payload("7")) == 1
    assert await monitor.poll_once() == 0
    await monitor.stop()


async def test_poll_failure_records_error(gateway) -> None:
    gateway.routes[SYNC_PATH] = httpx.Response(502, text="")
    monitor = _monitor(gateway)
    await monitor.start()

    assert await monitor.poll_once() == 0
    assert "sync failed" in monitor.status.last_error

    gateway.routes[SYNC_PATH] = httpx.Response(200, json={"AddMsgs": []})
    assert await monitor.poll_once() == 0
    await monitor.stop()


async def test_poll_delay_is_base_plus_jitter(gateway) -> None:
    monitor = _monitor(gateway, {"polling": {"enabled": False, "baseMs": 1000, "jitterMs": 500}})
    await monitor.start()

    delays = [monitor.next_poll_delay_s() for _ in range(50)]

    assert all(1.0 <= d < 1.5 for d in delays)
    await monitor.stop()


async def test_default_poll_delay_range(gateway) -> None:
    monitor = _monitor(gateway)
    delays = [monitor.next_poll_delay_s() for _ in range(50)]
    assert all(480 <= d < 900 for d in delays)


async def test_poll_loop_rearms_until_stopped(gateway) -> None:
    gateway.routes[SYNC_PATH] = httpx.Response(200, json={})
    sleep = GatedSleep(free=1)
    monitor = _monitor(gateway, {"polling": {"enabled": True}}, sleep=sleep)

    await monitor.start()
    for _ in range(20):
        if len(sleep.calls) >= 2:
            break
        await asyncio.sleep(0)

    assert len(sleep.calls) == 2
    assert len(gateway.json_bodies(SYNC_PATH)) == 1
    await monitor.stop()
    assert monitor._poll_task is None


async def test_stop_unregisters_and_discards_state(gateway) -> None:
    registry = WebhookRegistry()
    monitor = _monitor(gateway, registry=registry)
    await monitor.start()
    cancel_event = monitor.cancel_event

    await monitor.stop()

    assert "code-1" not in registry
    assert cancel_event.is_set()
    assert monitor.dedup is None and monitor.rate_limiter is None
    assert not monitor.status.running
    assert monitor.status.last_disconnect["error"] == "stopped"


async def test_restart_starts_with_clean_dedup(gateway) -> None:
    registry = WebhookRegistry()
    monitor = _monitor(gateway, registry=registry)
    await monitor.start()
    await registry.get("code-1")(_sync_payload("9"))
    await monitor.stop()

    await monitor.start()
    assert monitor.dedup.size("default") == 0
    await monitor.stop()


async def test_manager_skips_misconfigured_accounts(gateway) -> None:
    cfg = make_config({
        **NO_POLL,
        "accounts": {"broken": {"authcode": ""}, "second": {"authcode": "code-2"}},
    })
    manager = MonitorManager(load_config=lambda: cfg, responder=EchoResponder(), http=gateway.client())

    started = await manager.start_all()

    assert sorted(started) == ["second"]
    assert "authcode missing" in manager.statuses["broken"].last_error
    assert "code-2" in manager.registry

    await manager.stop_all()
    assert manager.monitors == {}
    assert len(manager.registry) == 0


async def test_app_lifespan_and_health(gateway) -> None:
    cfg = make_config(NO_POLL)
    manager = MonitorManager(load_config=lambda: cfg, responder=EchoResponder(), http=gateway.client())
    app = create_app(manager)

    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            health = (await client.get("/health")).json()
            resp = await client.post(webhook_path("code-1"), json=_sync_payload("h-1", "from webhook"))
        await manager.monitors["default"].pipeline.drain()

    assert health["accounts"]["default"]["running"] is True
    assert resp.status_code == 200
    assert gateway.json_bodies(SEND_TEXT_PATH)[-1]["Content"] == "from webhook [AI]"
    assert manager.monitors == {}


async def test_poll_cycle_error_keeps_the_schedule(gateway) -> None:
    gateway.routes[SYNC_PATH] = httpx.Response(200, json=_sync_payload("p-1"))
    cfg = make_config({**NO_POLL, "polling": {"enabled": True}})
    loads = {"n": 0}

    def flaky_load():
        loads["n"] += 1
        if loads["n"] == 2:  # first poll cycle
            raise OSError("config temporarily unreadable")
        return cfg

    sleep = GatedSleep(free=2)
    monitor = AccountMonitor(
        account_id="default",
        load_config=flaky_load,
        registry=WebhookRegistry(),
        responder=EchoResponder(),
        http=gateway.client(),
        rng=random.Random(0),
        sleep=sleep,
    )

    await monitor.start()
    await settle(lambda: len(sleep.calls) >= 3)

    assert len(gateway.json_bodies(SYNC_PATH)) == 2
    assert "config temporarily unreadable" in monitor.status.last_error
    await monitor.pipeline.drain()
    assert [b["Content"] for b in gateway.json_bodies(SEND_TEXT_PATH)] == ["hello [AI]"]
    await monitor.stop()


async def test_stop_finishes_the_segment_in_progress(gateway) -> None:
    gateway.routes[SYNC_PATH] = httpx.Response(200, json=_sync_payload("s-1", "first part\n\nsecond part"))
    held = HeldSleep()
    monitor = _monitor(gateway, {"humanDelay": True, "textChunkLimit": 15}, sleep=held)
    await monitor.start()

    assert await monitor.poll_once() == 1
    await settle(lambda: len(held.calls) == 1)

    stopping = asyncio.create_task(monitor.stop())
    await settle(lambda: monitor.cancel_event.is_set())
    assert not stopping.done()

    held.release.set()
    await stopping

    sends = [b["Content"] for b in gateway.json_bodies(SEND_TEXT_PATH)]
    assert sends == ["first part [AI]"]
    assert monitor.pipeline.in_flight == 0

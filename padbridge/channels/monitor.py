"""Per-account monitors: webhook registration, catch-up polling, owned state.

Each :class:`AccountMonitor` owns the dedup registry, rate state, gateway
client and cancel signal for one account. Stopping the monitor drops all of
it, so a restarted account starts clean.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from loguru import logger

from padbridge.agent.responder import Responder
from padbridge.bus.events import CHANNEL_ID
from padbridge.channels.accounts import ResolvedAccount, list_enabled_accounts, require_credentials, resolve_account
from padbridge.channels.client import GatewayClient
from padbridge.channels.dedup import DedupRegistry
from padbridge.channels.delivery import Sleep
from padbridge.channels.errors import BridgeError, ProtocolError, TransportError
from padbridge.channels.gate import MessageGate
from padbridge.channels.pipeline import InboundPipeline, OnMessage
from padbridge.channels.ratelimit import RateLimiter
from padbridge.channels.status import AccountStatus
from padbridge.channels.sync import extract_add_msgs
from padbridge.config.schema import Config, PollingConfig
from padbridge.pairing.store import AllowStore
from padbridge.utils.helpers import now_ms

WEBHOOK_PATH_PREFIX = f"/channels/{CHANNEL_ID}/sync"
DEFAULT_WEBHOOK_BASE_URL = "http://127.0.0.1:19001"

PayloadHandler = Callable[[Any], Awaitable[Any]]


def webhook_path(authcode: str) -> str:
    return f"{WEBHOOK_PATH_PREFIX}/{authcode}"


def resolve_webhook_base_url(cfg: Config, fallback: str = "") -> str:
    base = (cfg.channels.wechatpadpro.webhook_base_url or "").strip() or fallback.strip() or DEFAULT_WEBHOOK_BASE_URL
    return base.rstrip("/")


class WebhookRegistry:
    """Auth code → payload handler, consulted by the webhook route."""

    def __init__(self) -> None:
        self._handlers: dict[str, PayloadHandler] = {}

    def register(self, token: str, handler: PayloadHandler) -> Callable[[], None]:
        if token in self._handlers:
            logger.warning(f"Webhook handler for token ...{token[-4:]} replaced")
        self._handlers[token] = handler

        def unregister() -> None:
            if self._handlers.get(token) is handler:
                del self._handlers[token]

        return unregister

    def get(self, token: str) -> PayloadHandler | None:
        return self._handlers.get(token)

    def __contains__(self, token: str) -> bool:
        return token in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


class AccountMonitor:
    """Runs one account: webhook route, gateway registration, jittered poll."""

    def __init__(
        self,
        account_id: str,
        load_config: Callable[[], Config],
        registry: WebhookRegistry,
        responder: Responder,
        allow_store: AllowStore | None = None,
        http: httpx.AsyncClient | None = None,
        status: AccountStatus | None = None,
        on_message: OnMessage | None = None,
        webhook_base_fallback: str = "",
        rng: random.Random | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.account_id = account_id
        self._load_config = load_config
        self._registry = registry
        self._responder = responder
        self._allow_store = allow_store
        self._http = http
        self.status = status or AccountStatus(account_id=account_id)
        self._on_message = on_message
        self._webhook_base_fallback = webhook_base_fallback
        self._rng = rng or random.Random()
        self._sleep = sleep

        self._running = False
        self._unregister: Callable[[], None] | None = None
        self._poll_task: asyncio.Task | None = None
        self._polling = PollingConfig()

        self.account: ResolvedAccount | None = None
        self.client: GatewayClient | None = None
        self.dedup: DedupRegistry | None = None
        self.rate_limiter: RateLimiter | None = None
        self.cancel_event: asyncio.Event | None = None
        self.pipeline: InboundPipeline | None = None

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Raises :class:`ConfigurationError` when credentials are missing."""
        if self._running:
            return
        cfg = self._load_config()
        account = resolve_account(cfg, self.account_id)
        _, authcode = require_credentials(account)

        self.account = account
        self.dedup = DedupRegistry()
        self.rate_limiter = RateLimiter()
        self.cancel_event = asyncio.Event()
        self.client = GatewayClient(account, http=self._http)
        self.pipeline = InboundPipeline(
            account_id=account.account_id,
            load_config=self._load_config,
            dedup=self.dedup,
            rate_limiter=self.rate_limiter,
            gate=MessageGate(self.rate_limiter, self._allow_store),
            responder=self._responder,
            send=self._send_text,
            status_sink=self.status.as_sink(),
            on_message=self._on_message,
            cancel_event=self.cancel_event,
            rng=self._rng,
            sleep=self._sleep,
        )

        self._unregister = self._registry.register(authcode, self.pipeline.process_payload)
        self._running = True
        self.status.apply({"running": True, "last_error": None})

        await self._register_with_gateway(cfg, account)
        self.status.apply({"connected": True, "last_connected_at": now_ms(), "last_disconnect": None})

        self._polling = account.config.polling or PollingConfig()
        if self._polling.enabled:
            self._arm_poll()
        logger.info(f"[{CHANNEL_ID}:{account.account_id}] monitor started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._unregister is not None:
            self._unregister()
            self._unregister = None
        if self._poll_task is not None:
            # replies run outside the poll task, so this only interrupts a wait or a sync call
            self._poll_task.cancel()
            await asyncio.gather(self._poll_task, return_exceptions=True)
            self._poll_task = None
        if self.cancel_event is not None:
            self.cancel_event.set()
        if self.pipeline is not None:
            await self.pipeline.drain()
        if self.dedup is not None:
            self.dedup.discard(self.account_id)
        self.dedup = None
        self.rate_limiter = None
        if self.client is not None:
            await self.client.close()
        self.status.apply({
            "running": False,
            "connected": False,
            "last_disconnect": {"at": now_ms(), "error": "stopped"},
        })
        logger.info(f"[{CHANNEL_ID}:{self.account_id}] monitor stopped")

    async def _register_with_gateway(self, cfg: Config, account: ResolvedAccount) -> None:
        url = f"{resolve_webhook_base_url(cfg, self._webhook_base_fallback)}{webhook_path(account.authcode or '')}"
        try:
            await self.client.register_webhook(url)
            logger.info(f"[{CHANNEL_ID}:{account.account_id}] registered syncMessageUrl")
        except (TransportError, ProtocolError) as exc:
            logger.warning(f"[{CHANNEL_ID}:{account.account_id}] webhook registration failed: {exc}")
        try:
            await self.client.start_heartbeat()
            logger.info(f"[{CHANNEL_ID}:{account.account_id}] AutoHeartBeat started")
        except (TransportError, ProtocolError) as exc:
            logger.warning(f"[{CHANNEL_ID}:{account.account_id}] AutoHeartBeat failed: {exc}")

    async def _send_text(self, to: str, text: str) -> Any:
        if self.client is None:
            raise BridgeError(f"monitor for {self.account_id} is not running")
        return await self.client.send_text(to, text)

    # ------------------------------------------------------------------
    # Catch-up polling
    # ------------------------------------------------------------------

    def next_poll_delay_s(self) -> float:
        jitter = int(self._rng.random() * self._polling.jitter_ms)
        return (self._polling.base_ms + jitter) / 1000

    def _arm_poll(self) -> None:
        if not self._running:
            return
        delay_s = self.next_poll_delay_s()

        async def tick() -> None:
            await self._sleep(delay_s)
            if not self._running:
                return
            try:
                await self.poll_once()
            except Exception as exc:
                logger.error(f"[{CHANNEL_ID}:{self.account_id}] poll cycle failed: {exc}")
                self.status.apply({"last_error": str(exc)})
            finally:
                self._arm_poll()

        self._poll_task = asyncio.create_task(tick(), name=f"{CHANNEL_ID}-poll-{self.account_id}")

    async def poll_once(self) -> int:
        """One sync pull; failures are logged and reported as 0 dispatched."""
        if self.client is None or self.pipeline is None:
            return 0
        try:
            payload = await self.client.sync()
        except (TransportError, ProtocolError) as exc:
            logger.error(f"[{CHANNEL_ID}:{self.account_id}] sync poll failed: {exc}")
            self.status.apply({"last_error": str(exc)})
            return 0
        if not extract_add_msgs(payload):
            return 0
        return await self.pipeline.process_payload(payload)


class MonitorManager:
    """Starts and stops one monitor per enabled account."""

    def __init__(
        self,
        load_config: Callable[[], Config],
        responder: Responder,
        allow_store: AllowStore | None = None,
        registry: WebhookRegistry | None = None,
        http: httpx.AsyncClient | None = None,
        webhook_base_fallback: str = "",
    ) -> None:
        self._load_config = load_config
        self._responder = responder
        self._allow_store = allow_store
        self.registry = registry or WebhookRegistry()
        self._http = http
        self._webhook_base_fallback = webhook_base_fallback
        self.monitors: dict[str, AccountMonitor] = {}
        self.statuses: dict[str, AccountStatus] = {}

    def _monitor_for(self, account_id: str) -> AccountMonitor:
        status = self.statuses.setdefault(account_id, AccountStatus(account_id=account_id))
        return AccountMonitor(
            account_id=account_id,
            load_config=self._load_config,
            registry=self.registry,
            responder=self._responder,
            allow_store=self._allow_store,
            http=self._http,
            status=status,
            webhook_base_fallback=self._webhook_base_fallback,
        )

    async def start_account(self, account_id: str) -> AccountMonitor:
        existing = self.monitors.get(account_id)
        if existing is not None and existing.running:
            return existing
        monitor = self._monitor_for(account_id)
        await monitor.start()
        self.monitors[account_id] = monitor
        return monitor

    async def start_all(self) -> list[str]:
        """Start every enabled account; misconfigured ones are logged and skipped."""
        started: list[str] = []
        for account in list_enabled_accounts(self._load_config()):
            try:
                await self.start_account(account.account_id)
                started.append(account.account_id)
            except BridgeError as exc:
                logger.error(f"[{CHANNEL_ID}:{account.account_id}] monitor not started: {exc}")
                self.statuses.setdefault(
                    account.account_id, AccountStatus(account_id=account.account_id)
                ).apply({"last_error": str(exc)})
        return started

    async def stop_account(self, account_id: str) -> None:
        monitor = self.monitors.pop(account_id, None)
        if monitor is not None:
            await monitor.stop()

    async def stop_all(self) -> None:
        for account_id in list(self.monitors):
            await self.stop_account(account_id)

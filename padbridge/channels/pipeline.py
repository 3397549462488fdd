"""Inbound fan-in: the single admit → normalize → gate → dispatch path.

Both the webhook route and the poll loop hand raw sync payloads to
:meth:`InboundPipeline.process_payload`; dedup state is shared so a message
seen by both paths is dispatched once.

Admission and gating run inline, in payload order. Each reply then runs as
its own task so one paced delivery never holds up the rest of the batch.
"""

from __future__ import annotations

import asyncio
import inspect
import random
from collections.abc import Awaitable, Callable, Coroutine
from datetime import datetime
from typing import Any

from loguru import logger

from padbridge.agent.responder import Responder
from padbridge.bus.events import CHANNEL_ID, DispatchContext, InboundMessage, OutboundPayload
from padbridge.channels.accounts import ResolvedAccount, resolve_account
from padbridge.channels.dedup import DedupRegistry
from padbridge.channels.delivery import SEGMENT_CHAR_LIMIT, DeliveryReport, DeliveryShaper, SendText, Sleep
from padbridge.channels.gate import GateDrop, GateResult, MessageGate
from padbridge.channels.normalize import normalize
from padbridge.channels.ratelimit import RateLimiter
from padbridge.channels.status import StatusSink
from padbridge.channels.sync import extract_add_msgs, is_history, parse_sync_message
from padbridge.config.schema import Config
from padbridge.utils.helpers import now_ms

OnMessage = Callable[[InboundMessage], Awaitable[None] | None]


def format_envelope(from_label: str, timestamp_ms: int, body: str) -> str:
    stamp = datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M")
    return f"[WeChatPadPro {from_label} {stamp}] {body}"


def build_dispatch_context(message: InboundMessage, verdict: GateResult, account: ResolvedAccount) -> DispatchContext:
    is_group = message.is_group and bool(message.group_id)
    peer = verdict.peer_id
    chat_type = "group" if is_group else "direct"
    from_label = (message.group_name or message.group_id or peer) if is_group else verdict.sender_id
    return DispatchContext(
        body=format_envelope(from_label, message.timestamp, verdict.text),
        raw_body=verdict.text,
        from_address=f"{CHANNEL_ID}:group:{message.group_id}" if is_group else f"{CHANNEL_ID}:{verdict.sender_id}",
        to_address=f"{CHANNEL_ID}:{peer}",
        session_key=f"{CHANNEL_ID}:{account.account_id}:{chat_type}:{peer}",
        account_id=account.account_id,
        chat_type=chat_type,
        conversation_label=from_label,
        sender_id=verdict.sender_id,
        sender_name=verdict.sender_name or verdict.sender_id,
        message_sid=message.message_id,
        timestamp=message.timestamp,
        group_subject=(message.group_name or message.group_id) if is_group else None,
        metadata={"is_self_chat": verdict.is_self_chat, "msg_type": message.msg_type},
    )


class InboundPipeline:
    """Per-account dispatch path shared by every ingestion adapter."""

    def __init__(
        self,
        account_id: str,
        load_config: Callable[[], Config],
        dedup: DedupRegistry,
        rate_limiter: RateLimiter,
        gate: MessageGate,
        responder: Responder,
        send: SendText,
        status_sink: StatusSink | None = None,
        on_message: OnMessage | None = None,
        cancel_event: asyncio.Event | None = None,
        rng: random.Random | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.account_id = account_id
        self._load_config = load_config
        self.dedup = dedup
        self.rate_limiter = rate_limiter
        self.gate = gate
        self.responder = responder
        self._send = send
        self._status_sink = status_sink
        self._on_message = on_message
        self.cancel_event = cancel_event or asyncio.Event()
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every dispatch started so far (including ones they start)."""
        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        if (exc := task.exception()) is not None:
            logger.error(f"[{CHANNEL_ID}:{self.account_id}] dispatch task {task.get_name()} failed: {exc}")

    async def process_payload(self, payload: Any) -> int:
        """Admit and gate every new entry of a sync payload.

        Returns how many passed the gate; their replies run in the background
        (see :meth:`drain`).
        """
        cfg = self._load_config()
        account = resolve_account(cfg, self.account_id)
        dispatched = 0

        for entry in extract_add_msgs(payload):
            if is_history(entry):
                continue
            try:
                message = parse_sync_message(entry, account.self_id)
                if message is None:
                    continue
                if not self.dedup.admit(account.account_id, message.message_id):
                    logger.debug(f"[{CHANNEL_ID}:{account.account_id}] duplicate {message.message_id} skipped")
                    continue
                if self._on_message is not None:
                    result = self._on_message(message)
                    if inspect.isawaitable(result):
                        await result
                    dispatched += 1
                    continue
                if await self.handle_message(message, account, cfg):
                    dispatched += 1
            except Exception as exc:
                logger.error(f"[{CHANNEL_ID}:{account.account_id}] inbound processing error: {exc}")
        return dispatched

    async def handle_message(self, message: InboundMessage, account: ResolvedAccount, cfg: Config) -> bool:
        """Gate *message*; on a pass, start its reply task and return ``True``."""
        content = normalize(message)
        if content is None:
            return False

        verdict = await self.gate.evaluate(message, content, account, cfg)
        if isinstance(verdict, GateDrop):
            return False

        if self._status_sink is not None:
            self._status_sink({"last_inbound_at": message.timestamp})

        ctx = build_dispatch_context(message, verdict, account)
        logger.debug(f"[{CHANNEL_ID}:{account.account_id}] dispatching {message.message_id} ({ctx.session_key})")
        self._spawn(
            self._dispatch(ctx, verdict, account, message),
            name=f"{CHANNEL_ID}-dispatch-{account.account_id}-{message.message_id}",
        )
        return True

    def _shaper(self, account: ResolvedAccount) -> DeliveryShaper:
        config = account.config
        return DeliveryShaper(
            send=self._send,
            account_id=account.account_id,
            rng=self._rng,
            sleep=self._sleep,
            human_delay=config.human_delay is not False,
            segment_limit=config.text_chunk_limit or SEGMENT_CHAR_LIMIT,
            response_prefix=config.response_prefix or "",
            cancel_event=self.cancel_event,
            rate_limiter=self.rate_limiter,
            status_sink=self._status_sink,
        )

    async def _dispatch(
        self,
        ctx: DispatchContext,
        verdict: GateResult,
        account: ResolvedAccount,
        message: InboundMessage,
    ) -> None:
        shaper = self._shaper(account)

        async def deliver(payload: OutboundPayload) -> DeliveryReport:
            return await shaper.deliver(payload, verdict.peer_id)

        try:
            await self.responder.respond(ctx, deliver)
        except Exception as exc:
            elapsed = now_ms() - message.timestamp
            logger.error(f"[{CHANNEL_ID}:{account.account_id}] reply failed after {elapsed}ms: {exc}")

"""Outbound delivery shaping: segment a reply and pace it like a human typist."""

from __future__ import annotations

import asyncio
import random
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from padbridge.bus.events import CHANNEL_ID, OutboundPayload
from padbridge.channels.ratelimit import RateLimiter
from padbridge.channels.status import StatusSink
from padbridge.utils.helpers import now_ms

SEGMENT_CHAR_LIMIT = 500

INTER_SEGMENT_MIN_MS = 3000
INTER_SEGMENT_SPAN_MS = 5000

TYPING_CPS_MIN = 3.5
TYPING_CPS_SPAN = 2.5
THINK_MIN_MS = 800
THINK_SPAN_MS = 2200
TYPING_MIN_MS = 1500
TYPING_MAX_MS = 12000

_PARAGRAPH_RE = re.compile(r"\n{2,}")
_SENTENCE_RE = re.compile(r"(?<=[。！？.!?\n])")

SendText = Callable[[str, str], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[Any]]


def build_body(payload: OutboundPayload, prefix: str = "") -> str:
    """Reply text followed by one ``Attachment: <url>`` line per media URL."""
    text = (payload.text or "").strip()
    if text and prefix:
        text = f"{prefix}{text}"
    media_block = "\n".join(f"Attachment: {url}" for url in payload.media_list)
    if text and media_block:
        return f"{text}\n\n{media_block}"
    return text or media_block


def _hard_split(piece: str, limit: int) -> list[str]:
    return [piece[i : i + limit] for i in range(0, len(piece), limit)]


def _split_sentences(segment: str, limit: int) -> list[str]:
    out: list[str] = []
    buf = ""
    for sentence in _SENTENCE_RE.split(segment):
        if buf and len(buf) + len(sentence) > limit:
            out.append(buf.strip())
            buf = sentence
        else:
            buf += sentence
    if buf.strip():
        out.append(buf.strip())

    final: list[str] = []
    for piece in out:
        final.extend(_hard_split(piece, limit) if len(piece) > limit else [piece])
    return final


def split_segments(text: str, limit: int = SEGMENT_CHAR_LIMIT) -> list[str]:
    """Pack paragraphs into segments of at most *limit* chars.

    Paragraphs that alone exceed the limit are split on sentence
    terminators, and any sentence still too long is cut at the limit.
    """
    if len(text) <= limit:
        return [text] if text else []

    packed: list[str] = []
    current = ""
    for para in _PARAGRAPH_RE.split(text):
        if current and len(current) + len(para) + 2 > limit:
            packed.append(current.strip())
            current = para
        else:
            current = f"{current}\n\n{para}" if current else para
    if current.strip():
        packed.append(current.strip())

    segments: list[str] = []
    for seg in packed:
        if not seg:
            continue
        segments.extend([seg] if len(seg) <= limit else _split_sentences(seg, limit))
    return segments or [text]


def inter_segment_delay_ms(rng: random.Random) -> float:
    return INTER_SEGMENT_MIN_MS + rng.random() * INTER_SEGMENT_SPAN_MS


def typing_delay_ms(text: str, rng: random.Random) -> float:
    """Think time plus typing time at 3.5-6 chars/sec, clamped to [1.5s, 12s]."""
    cps = TYPING_CPS_MIN + rng.random() * TYPING_CPS_SPAN
    typing_ms = len(text) / cps * 1000
    think_ms = THINK_MIN_MS + rng.random() * THINK_SPAN_MS
    return max(TYPING_MIN_MS, min(TYPING_MAX_MS, think_ms + typing_ms))


@dataclass(frozen=True)
class DeliveryReport:
    segments_sent: int
    total_segments: int
    cancelled: bool = False
    delivered_at_ms: int | None = None

    @property
    def complete(self) -> bool:
        return not self.cancelled and self.segments_sent == self.total_segments


class DeliveryShaper:
    """Sends one reply as paced segments through *send*.

    ``send(to, text)`` is the gateway primitive; ``sleep`` takes seconds.
    Setting ``cancel_event`` stops delivery before the next segment.
    """

    def __init__(
        self,
        send: SendText,
        account_id: str,
        rng: random.Random | None = None,
        sleep: Sleep = asyncio.sleep,
        human_delay: bool = True,
        segment_limit: int = SEGMENT_CHAR_LIMIT,
        response_prefix: str = "",
        cancel_event: asyncio.Event | None = None,
        rate_limiter: RateLimiter | None = None,
        status_sink: StatusSink | None = None,
    ) -> None:
        self._send = send
        self.account_id = account_id
        self._rng = rng or random.Random()
        self._sleep = sleep
        self.human_delay = human_delay
        self.segment_limit = segment_limit
        self.response_prefix = response_prefix
        self._cancel = cancel_event
        self._rate_limiter = rate_limiter
        self._status_sink = status_sink

    def _cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    async def deliver(self, payload: OutboundPayload, destination: str) -> DeliveryReport:
        body = build_body(payload, self.response_prefix)
        if not body:
            return DeliveryReport(segments_sent=0, total_segments=0)

        segments = split_segments(body, self.segment_limit)
        sent = 0
        for i, segment in enumerate(segments):
            if self._cancelled():
                break
            if i == 0:
                if self.human_delay:
                    await self._sleep(typing_delay_ms(segment, self._rng) / 1000)
            else:
                await self._sleep(inter_segment_delay_ms(self._rng) / 1000)
            # a segment whose delay has started is always sent
            await self._send(destination, segment)
            sent += 1

        if sent < len(segments):
            logger.info(
                f"[{CHANNEL_ID}:{self.account_id}] delivery to {destination} cancelled "
                f"after {sent}/{len(segments)} segments"
            )
            return DeliveryReport(segments_sent=sent, total_segments=len(segments), cancelled=True)

        delivered_at = now_ms()
        if self._rate_limiter is not None:
            self._rate_limiter.record_reply(self.account_id, destination)
        if self._status_sink is not None:
            self._status_sink({"last_outbound_at": delivered_at})
        return DeliveryReport(
            segments_sent=sent,
            total_segments=len(segments),
            delivered_at_ms=delivered_at,
        )

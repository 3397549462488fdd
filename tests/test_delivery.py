import asyncio
import random

from conftest import FakeClock

from padbridge.bus.events import OutboundPayload
from padbridge.channels.delivery import (
    DeliveryShaper,
    build_body,
    inter_segment_delay_ms,
    split_segments,
    typing_delay_ms,
)
from padbridge.channels.ratelimit import RateLimiter
from padbridge.channels.status import AccountStatus


class SendRecorder:
    def __init__(self, on_send=None) -> None:
        self.sent: list[tuple[str, str]] = []
        self._on_send = on_send

    async def __call__(self, to: str, text: str) -> None:
        self.sent.append((to, text))
        if self._on_send is not None:
            self._on_send(len(self.sent))


# ── body / segmentation ──


def test_build_body_with_media() -> None:
    payload = OutboundPayload(text=" here ", media_urls=["http://a/1.png", "http://a/2.png"])
    assert build_body(payload) == "here\n\nAttachment: http://a/1.png\nAttachment: http://a/2.png"
    assert build_body(OutboundPayload(media_url="http://a/x")) == "Attachment: http://a/x"
    assert build_body(OutboundPayload(text="hi"), prefix="[bot] ") == "[bot] hi"
    assert build_body(OutboundPayload()) == ""


def test_short_text_is_one_segment() -> None:
    assert split_segments("hello") == ["hello"]
    assert split_segments("") == []


def test_paragraphs_pack_up_to_the_limit() -> None:
    first, second = "a" * 490, "b" * 490
    assert split_segments(f"{first}\n\n{second}") == [first, second]

    small = "x" * 100
    assert split_segments("\n\n".join([small] * 6)) == ["\n\n".join([small] * 4), "\n\n".join([small] * 2)]


def test_long_paragraph_splits_on_sentences() -> None:
    sentence = "word " * 59 + "end."  # 299 chars
    segments = split_segments(sentence + sentence, limit=500)

    assert len(segments) == 2
    assert all(len(s) <= 500 for s in segments)
    assert all(s.endswith("end.") for s in segments)


def test_unbroken_text_is_hard_split() -> None:
    segments = split_segments("z" * 1200, limit=500)
    assert [len(s) for s in segments] == [500, 500, 200]


def test_delay_ranges() -> None:
    rng = random.Random(7)
    for _ in range(200):
        assert 3000 <= inter_segment_delay_ms(rng) <= 8000
        assert 1500 <= typing_delay_ms("hi", rng) <= 12000
    assert typing_delay_ms("x" * 5000, rng) == 12000
    assert typing_delay_ms("", rng) >= 1500


# ── shaper ──


async def test_two_segments_with_human_pacing(recording_sleep) -> None:
    send = SendRecorder()
    shaper = DeliveryShaper(send, "default", rng=random.Random(1), sleep=recording_sleep)
    text = "a" * 490 + "\n\n" + "b" * 490

    report = await shaper.deliver(OutboundPayload(text=text), "wxid_alice")

    assert report.complete and report.segments_sent == 2
    assert [t for _, t in send.sent] == ["a" * 490, "b" * 490]
    typing, gap = recording_sleep.calls
    assert 1.5 <= typing <= 12
    assert 3 <= gap <= 8


async def test_human_delay_off_only_skips_typing(recording_sleep) -> None:
    send = SendRecorder()
    shaper = DeliveryShaper(send, "default", rng=random.Random(2), sleep=recording_sleep, human_delay=False)

    await shaper.deliver(OutboundPayload(text="one"), "wxid_alice")
    assert recording_sleep.calls == []

    await shaper.deliver(OutboundPayload(text="z" * 900), "wxid_alice")
    assert len(recording_sleep.calls) == 1


async def test_cancel_stops_before_next_segment(recording_sleep) -> None:
    cancel = asyncio.Event()
    send = SendRecorder(on_send=lambda n: cancel.set())
    shaper = DeliveryShaper(send, "default", rng=random.Random(3), sleep=recording_sleep, cancel_event=cancel)

    report = await shaper.deliver(OutboundPayload(text="z" * 1200), "wxid_alice")

    assert len(send.sent) == 1
    assert report.cancelled and not report.complete
    assert (report.segments_sent, report.total_segments) == (1, 3)


async def test_cancel_before_start_sends_nothing(recording_sleep) -> None:
    cancel = asyncio.Event()
    cancel.set()
    send = SendRecorder()

    report = await DeliveryShaper(send, "default", sleep=recording_sleep, cancel_event=cancel).deliver(
        OutboundPayload(text="hi"), "wxid_alice"
    )

    assert send.sent == [] and report.cancelled


async def test_completion_records_reply_and_status(recording_sleep) -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    status = AccountStatus(account_id="default")
    shaper = DeliveryShaper(
        SendRecorder(), "default", sleep=recording_sleep, rate_limiter=limiter, status_sink=status.as_sink(),
    )

    report = await shaper.deliver(OutboundPayload(text="hi"), "wxid_alice")

    assert limiter.last_activity("default", "wxid_alice") == clock.now
    assert status.last_outbound_at == report.delivered_at_ms


async def test_empty_payload_is_a_noop(recording_sleep) -> None:
    send = SendRecorder()
    report = await DeliveryShaper(send, "default", sleep=recording_sleep).deliver(OutboundPayload(text="  "), "x")
    assert report.total_segments == 0 and send.sent == []

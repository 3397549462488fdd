"""Content normalization for inbound gateway messages.

Turns raw sync entries into plain text the gate can reason about:

- group payloads carry a ``<sender>:\\n`` attribution line that is split off
  to recover the real sender;
- app messages (type 49) carry an XML card whose ``<type>`` code selects how
  it is rendered (quote, link card, transfer, red packet, ...).
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass

from padbridge.bus.events import CHANNEL_ID, MSG_TYPE_APP, InboundMessage

_ATTRIBUTION_ID_RE = re.compile(r"^[A-Za-z0-9_\-@.]+$")
_BARE_WXID_RE = re.compile(r"^wxid_[a-z0-9_-]+$", re.IGNORECASE)
_TARGET_ID_RE = re.compile(r"^[a-zA-Z0-9_\-@]+$")
_TARGET_PREFIX_RE = re.compile(r"^(wechatpadpro|wxp):", re.IGNORECASE)
_ALLOW_PREFIX_RE = re.compile(r"^(wechatpadpro|wxp|wechat861):", re.IGNORECASE)
_REFERMSG_RE = re.compile(r"<refermsg>.*?</refermsg>", re.DOTALL)

APP_TYPE_LINK = 5
APP_TYPE_QUOTE = 57
APP_TYPE_TRANSFER = 2000
APP_TYPE_RED_PACKET = 2001

RED_PACKET_PLACEHOLDER = "[Red packet]"


# ── app-message card variants ──


@dataclass(frozen=True)
class TransferCard:
    pass


@dataclass(frozen=True)
class QuoteCard:
    title: str
    quoted: str


@dataclass(frozen=True)
class LinkCard:
    title: str
    url: str
    description: str


@dataclass(frozen=True)
class RedPacketCard:
    pass


@dataclass(frozen=True)
class GenericCard:
    title: str | None


AppCard = TransferCard | QuoteCard | LinkCard | RedPacketCard | GenericCard


@dataclass(frozen=True)
class NormalizedContent:
    text: str
    sender_id: str


# ── group attribution ──


def split_group_attribution(text: str) -> tuple[str | None, str]:
    """Split ``"<sender>:\\n<body>"`` into ``(sender, body)``.

    Returns ``(None, text)`` when the first line is not an attribution line.
    """
    content = text.strip()
    newline_idx = content.find("\n")
    if newline_idx <= 0:
        return None, content
    first_line = content[:newline_idx].strip()
    if first_line.endswith(":"):
        candidate = first_line[:-1].strip()
        if candidate and _ATTRIBUTION_ID_RE.match(candidate):
            return candidate, content[newline_idx + 1 :].strip()
    elif _BARE_WXID_RE.match(first_line):
        return first_line, content[newline_idx + 1 :].strip()
    return None, content


# ── app-message parsing ──


def _scan_tag(xml: str, tag: str) -> str:
    m = re.search(rf"<{tag}>(?:<!\[CDATA\[)?(.*?)(?:\]\]>)?</{tag}>", xml, re.DOTALL)
    return m.group(1).strip() if m else ""


def _parse_type(value: str) -> int:
    value = value.strip()
    return int(value) if value.isdigit() else 0


def _fields_from_tree(raw: str) -> dict[str, str] | None:
    try:
        root = ET.fromstring(raw)
    except (ET.ParseError, ValueError):
        return None
    appmsg = root if root.tag == "appmsg" else root.find(".//appmsg")
    if appmsg is None:
        appmsg = root
    refer = appmsg.find("refermsg")
    return {
        "type": (appmsg.findtext("type") or "").strip(),
        "title": (appmsg.findtext("title") or "").strip(),
        "url": (appmsg.findtext("url") or "").strip(),
        "des": (appmsg.findtext("des") or "").strip(),
        "refer": (refer.findtext("content") or "").strip() if refer is not None else "",
        "has_title": "1" if appmsg.find("title") is not None else "",
    }


def _fields_from_scan(raw: str) -> dict[str, str]:
    """Lenient tag scan for payloads that are not well-formed XML."""
    refer_block = _REFERMSG_RE.search(raw)
    outer = _REFERMSG_RE.sub("", raw)
    return {
        "type": _scan_tag(outer, "type"),
        "title": _scan_tag(outer, "title"),
        "url": _scan_tag(outer, "url"),
        "des": _scan_tag(outer, "des"),
        "refer": _scan_tag(refer_block.group(0), "content") if refer_block else "",
        "has_title": "1" if "<title>" in outer else "",
    }


def parse_app_message(raw: str) -> AppCard:
    """Parse an app-message payload into a card. Never raises."""
    raw = raw.strip()
    fields = _fields_from_tree(raw) or _fields_from_scan(raw)
    type_code = _parse_type(fields["type"])

    if type_code == APP_TYPE_TRANSFER:
        return TransferCard()
    if type_code == APP_TYPE_QUOTE:
        return QuoteCard(title=fields["title"], quoted=fields["refer"])
    if type_code == APP_TYPE_LINK:
        return LinkCard(title=fields["title"], url=fields["url"], description=fields["des"])
    if type_code == APP_TYPE_RED_PACKET:
        return RedPacketCard()
    return GenericCard(title=fields["title"] if fields["has_title"] else None)


def render_app_card(card: AppCard, raw: str) -> str | None:
    """Text for a card; ``None`` means the message must be dropped."""
    if isinstance(card, TransferCard):
        return None
    if isinstance(card, QuoteCard):
        if card.quoted and card.title:
            return f"[Quote: {card.title}]\n{card.quoted}"
        return card.quoted or card.title
    if isinstance(card, LinkCard):
        return "\n".join(p for p in (card.title, card.url, card.description) if p)
    if isinstance(card, RedPacketCard):
        return RED_PACKET_PLACEHOLDER
    return card.title or raw.strip()


def looks_tagged(raw: str) -> bool:
    return "<" in raw and ">" in raw


def normalize(message: InboundMessage) -> NormalizedContent | None:
    """Plain text and true sender for *message*, or ``None`` to drop it."""
    sender_id = message.sender_id
    body = message.text or ""
    raw = message.raw_content or body

    if message.is_group:
        attributed, body = split_group_attribution(body)
        if attributed:
            sender_id = attributed
        _, raw = split_group_attribution(raw)

    if message.msg_type == MSG_TYPE_APP and looks_tagged(raw):
        rendered = render_app_card(parse_app_message(raw), raw)
        if rendered is None:
            return None
        body = rendered

    body = body.strip()
    if not body:
        return None
    return NormalizedContent(text=body, sender_id=sender_id)


# ── messaging targets ──


def strip_target_prefix(raw: str) -> str:
    """Bare wxid from ``wechatpadpro:<id>`` / ``wxp:<id>`` / ``<id>``."""
    value = raw.strip()
    for prefix in (f"{CHANNEL_ID}:", "wxp:"):
        if value.startswith(prefix):
            return value[len(prefix) :].strip()
    return value


def normalize_target(raw: str) -> str | None:
    value = strip_target_prefix(raw)
    return f"{CHANNEL_ID}:{value}" if value else None


def looks_like_target_id(raw: str) -> bool:
    value = raw.strip()
    if not value:
        return False
    if _TARGET_PREFIX_RE.match(value):
        return True
    return bool(_TARGET_ID_RE.match(value))


def normalize_allow_entry(raw: str) -> str:
    return _ALLOW_PREFIX_RE.sub("", str(raw).strip()).strip().lower()

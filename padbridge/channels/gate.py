"""Inbound message gate: the ordered filter chain between normalization and dispatch.

Stages, first drop wins:

1. message type (text / app message only, silent)
2. blocked sender (system accounts, built-in and configured blocklists)
3. self message (self-chat passes; otherwise trigger keyword required;
   replies carrying the AI suffix are dropped to break echo loops)
4. group addressing (@self, @nickname, trigger keyword in open groups)
5. rate limit (per-chat cooldown + per-account window; self-chat exempt)
6. access policy (pairing / allowlist / open / disabled)
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from padbridge.bus.events import CHANNEL_ID, MSG_TYPE_APP, MSG_TYPE_TEXT, InboundMessage
from padbridge.channels.accounts import ResolvedAccount, resolve_dm_policy, resolve_group_policy
from padbridge.channels.normalize import NormalizedContent, normalize_allow_entry
from padbridge.channels.ratelimit import (
    DEFAULT_CHAT_COOLDOWN_MS,
    DEFAULT_GLOBAL_MAX_PER_MIN,
    RateLimiter,
    RateTicket,
)
from padbridge.config.schema import AccountConfig, Config, DmPolicy, GroupPolicy
from padbridge.pairing.store import AllowStore

DEFAULT_BLOCKED = frozenset({
    "weixin",
    "fmessage",
    "newsapp",
    "filehelper",
    "floatbottle",
    "medianote",
    "mphelper",
})
SYSTEM_ACCOUNT_PREFIX = "gh_"
DEFAULT_AI_SUFFIX = " [AI]"

_EVERYONE_RE = re.compile(r"^@(?:所有人|全体成员|all|\s*所有人)\s*$", re.IGNORECASE)

SUPPORTED_MSG_TYPES = frozenset({MSG_TYPE_TEXT, MSG_TYPE_APP})


@dataclass(frozen=True)
class GateResult:
    """A message that passed every stage, with the text to dispatch."""

    text: str
    sender_id: str
    sender_name: str | None
    peer_id: str
    is_self_chat: bool
    rate_ticket: RateTicket | None = None


@dataclass(frozen=True)
class GateDrop:
    reason: str
    sender_id: str
    target_id: str | None = None
    silent: bool = False


DropSink = Callable[[str, GateDrop], None]


def log_inbound_drop(account_id: str, drop: GateDrop) -> None:
    target = f" target={drop.target_id}" if drop.target_id else ""
    logger.info(
        f"[{CHANNEL_ID}:{account_id}] inbound dropped: {drop.reason} "
        f"(sender={drop.sender_id or '-'}{target})"
    )


# ── stage helpers ──


def is_blocked_sender(sender_id: str, config: AccountConfig) -> bool:
    wxid = (sender_id or "").strip().lower()
    if not wxid:
        return True
    if wxid.startswith(SYSTEM_ACCOUNT_PREFIX) or wxid in DEFAULT_BLOCKED:
        return True
    return any((b or "").strip().lower() == wxid for b in config.blocked_accounts or [])


def is_everyone_mention(text: str) -> bool:
    return bool(_EVERYONE_RE.match(text.strip()))


def _mention_re(mention: str) -> re.Pattern[str]:
    # WeChat ends a mention with U+2005; `@bot` must not match inside `@bottle`
    return re.compile(re.escape(mention) + r"(?![\w-])", re.IGNORECASE)


def _strip_mention(text: str, mention: str) -> str:
    return _mention_re(mention).sub("", text).strip()


def _match_keyword(text: str, keywords: list[str] | None) -> str | None:
    for kw in keywords or []:
        k = (kw or "").strip()
        if k and text.startswith(k):
            return k
    return None


def match_group_address(
    text: str,
    self_id: str,
    group_id: str,
    config: AccountConfig,
) -> str | None:
    """Cleaned text if the bot is addressed in this group message, else ``None``."""
    if is_everyone_mention(text):
        return None

    if self_id and _mention_re(f"@{self_id}").search(text):
        return _strip_mention(text, f"@{self_id}")

    for nick in config.my_nicknames or []:
        nick = (nick or "").strip()
        if nick and _mention_re(f"@{nick}").search(text):
            return _strip_mention(text, f"@{nick}")

    open_groups = {(g or "").strip().lower() for g in config.open_groups or []}
    if group_id.lower() in open_groups:
        kw = _match_keyword(text, config.trigger_keywords)
        if kw:
            return text[len(kw):].strip()
    return None


def _allow_match(sender_id: str, configured: list[str] | None, stored: list[str]) -> bool:
    entries = {normalize_allow_entry(e) for e in configured or []} | set(stored)
    return "*" in entries or sender_id.strip().lower() in entries


# ── the gate ──


class MessageGate:
    """Stateless filter chain over shared, monitor-owned rate state."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        allow_store: AllowStore | None = None,
        drop_sink: DropSink = log_inbound_drop,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.allow_store = allow_store
        self.drop_sink = drop_sink

    def _drop(self, account: ResolvedAccount, drop: GateDrop) -> GateDrop:
        if not drop.silent:
            self.drop_sink(account.account_id, drop)
        return drop

    async def _stored_allow_from(self, account: ResolvedAccount) -> list[str]:
        if self.allow_store is None:
            return []
        try:
            return [normalize_allow_entry(e) for e in await self.allow_store.read_allow_from(CHANNEL_ID)]
        except Exception as exc:
            logger.warning(f"[{CHANNEL_ID}:{account.account_id}] pairing store read failed: {exc}")
            return []

    async def evaluate(
        self,
        message: InboundMessage,
        content: NormalizedContent,
        account: ResolvedAccount,
        cfg: Config,
    ) -> GateResult | GateDrop:
        config = account.config
        self_id = account.self_id
        text = content.text
        sender_id = content.sender_id
        sender_name = message.sender_name

        # 1. type
        if message.msg_type not in SUPPORTED_MSG_TYPES:
            return GateDrop("unsupported message type", sender_id, silent=True)

        # 2. blocked sender
        if is_blocked_sender(sender_id, config):
            return self._drop(account, GateDrop("blocked account", sender_id))

        # 3. self message
        is_self = bool(self_id) and sender_id == self_id
        is_self_chat = is_self and message.sender_id == message.recipient_id == self_id
        if is_self:
            if not is_self_chat:
                kw = _match_keyword(text, config.trigger_keywords)
                if kw is None:
                    return self._drop(account, GateDrop("self message without trigger", sender_id))
                text = text[len(kw):].strip()
            ai_suffix = DEFAULT_AI_SUFFIX if config.ai_suffix is None else config.ai_suffix
            if ai_suffix and text.endswith(ai_suffix):
                return self._drop(account, GateDrop("own ai reply", sender_id))

        # 4. group addressing
        group_id = message.group_id if message.is_group else None
        if group_id:
            cleaned = match_group_address(text, self_id, group_id, config)
            if cleaned is None:
                return self._drop(account, GateDrop("group not @'d or trigger", sender_id, group_id))
            text = cleaned

        if not text.strip():
            return self._drop(account, GateDrop("empty after cleaning", sender_id, group_id))
        if group_id:
            text = f"{sender_name or sender_id}: {text}"

        if group_id:
            peer_id = group_id
        elif is_self and not is_self_chat:
            peer_id = message.recipient_id
        else:
            peer_id = sender_id

        # 5. rate limit
        ticket: RateTicket | None = None
        if not is_self_chat:
            limits = config.rate_limiting
            cooldown = limits.chat_cooldown_ms if limits and limits.chat_cooldown_ms is not None else DEFAULT_CHAT_COOLDOWN_MS
            max_per_min = (
                limits.global_max_per_min if limits and limits.global_max_per_min is not None else DEFAULT_GLOBAL_MAX_PER_MIN
            )
            ticket = self.rate_limiter.acquire(account.account_id, peer_id, cooldown, max_per_min)
            if ticket is None:
                return self._drop(account, GateDrop("rate limited", sender_id, peer_id))

        # 6. access policy (the account owner is always allowed)
        if not is_self:
            drop = await self._check_access(account, cfg, sender_id, group_id)
            if drop is not None:
                if ticket is not None:
                    self.rate_limiter.release(ticket)
                return self._drop(account, drop)

        return GateResult(
            text=text,
            sender_id=sender_id,
            sender_name=sender_name,
            peer_id=peer_id,
            is_self_chat=is_self_chat,
            rate_ticket=ticket,
        )

    async def _check_access(
        self,
        account: ResolvedAccount,
        cfg: Config,
        sender_id: str,
        group_id: str | None,
    ) -> GateDrop | None:
        config = account.config
        if group_id:
            policy = resolve_group_policy(account, cfg)
            if policy == GroupPolicy.OPEN:
                return None
            if policy == GroupPolicy.DISABLED:
                return GateDrop("group disabled", sender_id, group_id)
            stored = await self._stored_allow_from(account)
            if not _allow_match(sender_id, config.group_allow_from, stored):
                return GateDrop("group allowlist", sender_id, group_id)
            return None

        policy = resolve_dm_policy(account)
        if policy == DmPolicy.OPEN:
            return None
        stored = await self._stored_allow_from(account)
        if _allow_match(sender_id, config.allow_from, stored):
            return None
        reason = "dm pairing required" if policy == DmPolicy.PAIRING else "dm allowlist"
        return GateDrop(reason, sender_id)

"""Configuration schema for padbridge.

Field names are snake_case; the on-disk JSON uses camelCase and is converted
by :mod:`padbridge.config.loader`. Per-account fields default to ``None`` so
that a per-account override only wins for the keys it actually sets.
"""

from __future__ import annotations

from enum import Enum as PyEnum

from pydantic import BaseModel, ConfigDict, Field


class DmPolicy(str, PyEnum):
    PAIRING = "pairing"
    ALLOWLIST = "allowlist"
    OPEN = "open"


class GroupPolicy(str, PyEnum):
    ALLOWLIST = "allowlist"
    OPEN = "open"
    DISABLED = "disabled"


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore")


class RateLimitingConfig(_Section):
    chat_cooldown_ms: int | None = None
    global_max_per_min: int | None = None


class PollingConfig(_Section):
    enabled: bool = True
    base_ms: int = 8 * 60_000
    jitter_ms: int = 7 * 60_000


class AccountConfig(_Section):
    """Credentials and policy for one WeChatPadPro login."""

    name: str | None = None
    enabled: bool | None = None
    server_url: str | None = None
    wxid: str | None = None
    authcode: str | None = None

    # access policy
    dm_policy: DmPolicy | None = None
    allow_from: list[str] | None = None
    group_policy: GroupPolicy | None = None
    group_allow_from: list[str] | None = None

    # group addressing
    trigger_keywords: list[str] | None = None
    open_groups: list[str] | None = None
    my_nicknames: list[str] | None = None

    # filtering
    blocked_accounts: list[str] | None = None
    ai_suffix: str | None = None
    rate_limiting: RateLimitingConfig | None = None

    # outbound pacing
    human_delay: bool | None = None
    text_chunk_limit: int | None = None
    response_prefix: str | None = None

    # local webhook listener (informational; the host process binds the port)
    webhook_port: int | None = None

    # catch-up polling
    polling: PollingConfig | None = None


class WeChatPadProConfig(AccountConfig):
    """Channel section: base account fields plus the multi-account map."""

    webhook_base_url: str | None = None
    default_account: str | None = None
    accounts: dict[str, AccountConfig] = Field(default_factory=dict)


class ChannelDefaults(_Section):
    group_policy: GroupPolicy | None = None


class ChannelsConfig(_Section):
    defaults: ChannelDefaults = Field(default_factory=ChannelDefaults)
    wechatpadpro: WeChatPadProConfig = Field(default_factory=WeChatPadProConfig)


class ResponderConfig(_Section):
    """Downstream responder selection."""

    kind: str = "echo"  # echo | litellm
    model: str = ""
    api_key: str = ""
    api_base: str = ""
    system_prompt: str = (
        "You are a friendly assistant replying inside a WeChat chat. "
        "Keep answers short and conversational."
    )
    temperature: float = 0.7
    max_tokens: int = 1024


class Config(_Section):
    """Root configuration."""

    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    responder: ResponderConfig = Field(default_factory=ResponderConfig)

"""Account resolution for the WeChatPadPro channel.

The channel section of the config doubles as the base account; entries under
``accounts`` override it field by field. Resolution never raises: callers
that need a server URL or auth code go through :func:`require_credentials`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger

from padbridge.channels.errors import ConfigurationError
from padbridge.config.schema import AccountConfig, Config, DmPolicy, GroupPolicy

DEFAULT_ACCOUNT_ID = "default"

# Channel-level keys that never leak into a resolved account.
_CHANNEL_ONLY_FIELDS = {"accounts", "webhook_base_url", "default_account"}


@dataclass(frozen=True)
class ResolvedAccount:
    """Immutable snapshot of one account's credentials and policy."""

    account_id: str
    enabled: bool
    server_url: str
    config: AccountConfig
    name: str | None = None
    authcode: str | None = None
    wxid: str | None = None

    @property
    def self_id(self) -> str:
        return self.wxid or ""


def normalize_account_id(account_id: str | None) -> str:
    value = (account_id or "").strip().lower()
    return value or DEFAULT_ACCOUNT_ID


def list_account_ids(cfg: Config) -> list[str]:
    """Configured account ids, normalized and sorted; ``["default"]`` when none."""
    accounts = cfg.channels.wechatpadpro.accounts
    ids = {normalize_account_id(key) for key in accounts if key}
    if not ids:
        return [DEFAULT_ACCOUNT_ID]
    return sorted(ids)


def resolve_default_account_id(cfg: Config) -> str:
    alias = (cfg.channels.wechatpadpro.default_account or "").strip()
    if alias:
        return normalize_account_id(alias)
    ids = list_account_ids(cfg)
    if DEFAULT_ACCOUNT_ID in ids:
        return DEFAULT_ACCOUNT_ID
    return ids[0] if ids else DEFAULT_ACCOUNT_ID


def _lookup_override(cfg: Config, account_id: str) -> AccountConfig | None:
    accounts = cfg.channels.wechatpadpro.accounts
    if account_id in accounts:
        return accounts[account_id]
    normalized = normalize_account_id(account_id)
    for key, value in accounts.items():
        if normalize_account_id(key) == normalized:
            return value
    return None


def merge_account_config(cfg: Config, account_id: str) -> AccountConfig:
    """Base channel fields overlaid with the account's explicitly set fields."""
    base = cfg.channels.wechatpadpro.model_dump(exclude_none=True, exclude=_CHANNEL_ONLY_FIELDS)
    override = _lookup_override(cfg, account_id)
    if override is not None:
        base.update(override.model_dump(exclude_none=True))
    return AccountConfig.model_validate(base)


def _clean(value: str | None) -> str | None:
    value = (value or "").strip()
    return value or None


def _resolve_one(cfg: Config, account_id: str) -> ResolvedAccount:
    merged = merge_account_config(cfg, account_id)
    base_enabled = cfg.channels.wechatpadpro.enabled is not False
    server_url = (merged.server_url or "").strip()
    if server_url.endswith("/"):
        server_url = server_url[:-1]

    resolved = ResolvedAccount(
        account_id=account_id,
        enabled=base_enabled and merged.enabled is not False,
        server_url=server_url,
        config=merged,
        name=_clean(merged.name),
        authcode=_clean(merged.authcode),
        wxid=_clean(merged.wxid),
    )
    logger.debug(f"Resolved account {account_id}: {describe_account(resolved)}")
    return resolved


def resolve_account(cfg: Config, account_id: str | None = None) -> ResolvedAccount:
    """Resolve one account.

    With an explicit id, that account is returned as-is. Without one, the
    default id is tried first; if it has no server URL the ``default``
    sentinel is tried and whichever has a server URL wins (the first
    attempt on a tie).
    """
    if account_id and account_id.strip():
        return _resolve_one(cfg, normalize_account_id(account_id))

    primary = _resolve_one(cfg, resolve_default_account_id(cfg))
    if primary.server_url or primary.account_id == DEFAULT_ACCOUNT_ID:
        return primary
    fallback = _resolve_one(cfg, DEFAULT_ACCOUNT_ID)
    return fallback if fallback.server_url else primary


def list_enabled_accounts(cfg: Config) -> list[ResolvedAccount]:
    accounts = (resolve_account(cfg, account_id) for account_id in list_account_ids(cfg))
    return [account for account in accounts if account.enabled]


def is_configured(account: ResolvedAccount) -> bool:
    return bool(account.server_url and (account.authcode or account.wxid))


def require_credentials(account: ResolvedAccount) -> tuple[str, str]:
    """Return ``(server_url, authcode)`` or raise :class:`ConfigurationError`."""
    if not account.server_url:
        raise ConfigurationError(
            f"WeChatPadPro serverUrl missing for account \"{account.account_id}\" "
            "(set channels.wechatpadpro.serverUrl)."
        )
    if not account.authcode:
        raise ConfigurationError(
            f"WeChatPadPro authcode missing for account \"{account.account_id}\" "
            "(set channels.wechatpadpro.authcode)."
        )
    return account.server_url, account.authcode


def describe_account(account: ResolvedAccount) -> dict[str, Any]:
    """Redacted summary, safe to log or print."""

    def mark(value: str | None) -> str:
        return "[set]" if value else "[missing]"

    return {
        "account_id": account.account_id,
        "name": account.name,
        "enabled": account.enabled,
        "configured": is_configured(account),
        "server_url": mark(account.server_url),
        "authcode": mark(account.authcode),
        "wxid": mark(account.wxid),
    }


# ── policy helpers ──


def resolve_dm_policy(account: ResolvedAccount) -> DmPolicy:
    return account.config.dm_policy or DmPolicy.PAIRING


def resolve_group_policy(account: ResolvedAccount, cfg: Config) -> GroupPolicy:
    return account.config.group_policy or cfg.channels.defaults.group_policy or GroupPolicy.ALLOWLIST


def collect_warnings(account: ResolvedAccount, cfg: Config) -> list[str]:
    """Human-readable warnings about risky policy settings."""
    warnings: list[str] = []
    if resolve_group_policy(account, cfg) == GroupPolicy.OPEN:
        warnings.append(
            f"- WeChatPadPro[{account.account_id}] groups: groupPolicy=\"open\" allows any "
            "member to trigger (mention-gated). Set channels.wechatpadpro.groupPolicy="
            "\"allowlist\" + channels.wechatpadpro.groupAllowFrom to restrict senders."
        )
    if resolve_dm_policy(account) == DmPolicy.OPEN and "*" not in (account.config.allow_from or []):
        warnings.append(
            f"- WeChatPadPro[{account.account_id}] direct messages: dmPolicy=\"open\" "
            "without \"*\" in allowFrom. Add \"*\" to allowFrom to make the intent explicit."
        )
    return warnings

"""Per-account runtime status, fed by partial patches from the monitor and shaper."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from padbridge.channels.accounts import ResolvedAccount, describe_account

StatusSink = Callable[[dict[str, Any]], None]

_FIELDS = {
    "running",
    "connected",
    "last_connected_at",
    "last_disconnect",
    "last_inbound_at",
    "last_outbound_at",
    "last_error",
}


@dataclass
class AccountStatus:
    account_id: str
    running: bool = False
    connected: bool = False
    last_connected_at: int | None = None
    last_disconnect: dict[str, Any] | None = None
    last_inbound_at: int | None = None
    last_outbound_at: int | None = None
    last_error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def apply(self, patch: dict[str, Any]) -> None:
        """Merge a partial patch; unknown keys land in ``extra``."""
        for key, value in patch.items():
            if key in _FIELDS:
                setattr(self, key, value)
            else:
                self.extra[key] = value

    def as_sink(self) -> StatusSink:
        return self.apply

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def build_account_snapshot(account: ResolvedAccount, status: AccountStatus | None = None) -> dict[str, Any]:
    """Redacted account summary merged with its live status."""
    snapshot = describe_account(account)
    if status is not None:
        data = status.to_dict()
        data.pop("account_id", None)
        snapshot.update(data)
    return snapshot

"""Parsing of gateway sync payloads (webhook push and ``/api/Msg/Sync`` pull).

The gateway serializes protobuf messages with inconsistent field naming, so
every field is looked up through a list of aliases.
"""

from __future__ import annotations

import uuid
from typing import Any

from padbridge.bus.events import InboundMessage
from padbridge.utils.helpers import now_ms

GROUP_SUFFIX = "@chatroom"

_FROM_KEYS = ("fromUser", "from_user_name", "FromUserName", "from_user")
_TO_KEYS = ("toUser", "to_user_name", "ToUserName", "to_user")
_CONTENT_KEYS = ("content", "Content")
_TYPE_KEYS = ("msgType", "msg_type", "MsgType", "type")
_ID_KEYS = ("new_msg_id", "NewMsgId", "newMsgId", "MsgId", "msg_id", "msgId")
_TIME_KEYS = ("create_time", "CreateTime", "createTime", "timestamp")
_PUSH_CONTENT_KEYS = ("pushContent", "PushContent", "push_content")

# protobuf SKBuiltinString_t wrapper keys
_WRAPPER_KEYS = ("string", "str", "String_", "String")


def _first(entry: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = entry.get(key)
        if value is not None:
            return value
    return None


def extract_str(field: Any) -> str:
    """Plain string from a raw field or a protobuf string wrapper."""
    if field is None:
        return ""
    if isinstance(field, str):
        return field
    if isinstance(field, dict):
        for key in _WRAPPER_KEYS:
            if isinstance(field.get(key), str):
                return field[key]
    return str(field)


def extract_add_msgs(payload: Any) -> list[dict[str, Any]]:
    """Message entries under ``AddMsgs`` or ``Data.AddMsgs``."""
    if not isinstance(payload, dict):
        return []
    add_msgs = payload.get("AddMsgs")
    if add_msgs is None and isinstance(payload.get("Data"), dict):
        add_msgs = payload["Data"].get("AddMsgs")
    if not isinstance(add_msgs, list):
        return []
    return [m for m in add_msgs if isinstance(m, dict)]


def is_history(entry: dict[str, Any]) -> bool:
    return entry.get("isHistory") is True


def _to_int(value: Any, default: int) -> int:
    try:
        return int(float(extract_str(value)))
    except (TypeError, ValueError):
        return default


def to_epoch_ms(value: Any) -> int:
    """Gateway timestamps come in seconds or milliseconds."""
    now = now_ms()
    ts = _to_int(value, now) if value is not None else now
    return ts if ts > 1_000_000_000_000 else ts * 1000


def synthetic_message_id() -> str:
    return f"sync-{now_ms()}-{uuid.uuid4().hex[:7]}"


def _sender_name_from_push(push_content: str) -> str | None:
    """``"Alice : hello"`` / ``"Alice: hello"`` push previews carry the display name."""
    for sep in (" : ", ": "):
        if sep in push_content:
            name = push_content.split(sep, 1)[0].strip()
            return name or None
    return None


def parse_sync_message(entry: dict[str, Any], self_id: str = "") -> InboundMessage | None:
    """Convert one ``AddMsgs`` entry; ``None`` when it carries nothing usable."""
    from_user = extract_str(_first(entry, _FROM_KEYS)).strip()
    to_user = extract_str(_first(entry, _TO_KEYS)).strip()
    content = extract_str(_first(entry, _CONTENT_KEYS))
    msg_type = _to_int(_first(entry, _TYPE_KEYS), 0)

    text = content.strip()
    if not text:
        return None

    message_id = extract_str(_first(entry, _ID_KEYS)).strip() or synthetic_message_id()
    is_group = GROUP_SUFFIX in from_user or GROUP_SUFFIX in to_user
    group_id = (from_user if GROUP_SUFFIX in from_user else to_user) if is_group else None

    sender_name = None
    if is_group:
        push = extract_str(_first(entry, _PUSH_CONTENT_KEYS))
        sender_name = _sender_name_from_push(push) if push else None

    return InboundMessage(
        message_id=message_id,
        recipient_id=to_user or self_id,
        sender_id=from_user,
        text=text,
        timestamp=to_epoch_ms(_first(entry, _TIME_KEYS)),
        is_group=is_group,
        sender_name=sender_name,
        group_id=group_id,
        msg_type=msg_type,
        raw_content=content or None,
    )

"""Event types flowing between the gateway adapters and the responder."""

from dataclasses import dataclass, field
from typing import Any

CHANNEL_ID = "wechatpadpro"

MSG_TYPE_TEXT = 1
MSG_TYPE_APP = 49


@dataclass(frozen=True)
class InboundMessage:
    """Message received from the gateway. Never mutated after creation."""

    message_id: str
    recipient_id: str  # receiving party of the raw message (the bot, or the peer when self-sent)
    sender_id: str  # raw sender; for groups this may be the group id until attribution is split
    text: str
    timestamp: int  # epoch ms
    is_group: bool = False
    sender_name: str | None = None
    group_id: str | None = None
    group_name: str | None = None
    msg_type: int = MSG_TYPE_TEXT
    raw_content: str | None = None


@dataclass(frozen=True)
class OutboundPayload:
    """Responder output handed to the delivery shaper."""

    text: str | None = None
    media_url: str | None = None
    media_urls: list[str] = field(default_factory=list)

    @property
    def media_list(self) -> list[str]:
        if self.media_urls:
            return list(self.media_urls)
        return [self.media_url] if self.media_url else []


@dataclass
class DispatchContext:
    """Context handed to the responder for one admitted message."""

    body: str  # envelope-formatted text
    raw_body: str  # cleaned text without the envelope
    from_address: str
    to_address: str
    session_key: str
    account_id: str
    chat_type: str  # "direct" | "group"
    conversation_label: str
    sender_id: str
    sender_name: str
    message_sid: str
    timestamp: int
    group_subject: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_group(self) -> bool:
        return self.chat_type == "group"

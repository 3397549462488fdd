"""Event types shared by the ingestion, gate and delivery layers."""

from padbridge.bus.events import DispatchContext, InboundMessage, OutboundPayload

__all__ = ["DispatchContext", "InboundMessage", "OutboundPayload"]

"""Responder implementations."""

from padbridge.agent.responder import EchoResponder, LiteLLMResponder, Responder, create_responder

__all__ = ["EchoResponder", "LiteLLMResponder", "Responder", "create_responder"]

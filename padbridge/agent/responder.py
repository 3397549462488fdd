"""Downstream responders: whatever produces the reply for an admitted message."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from loguru import logger

from padbridge.bus.events import DispatchContext, OutboundPayload
from padbridge.config.schema import ResponderConfig

Deliver = Callable[[OutboundPayload], Awaitable[Any]]
Completion = Callable[..., Awaitable[Any]]


class Responder(Protocol):
    async def respond(self, ctx: DispatchContext, deliver: Deliver) -> None: ...


class EchoResponder:
    """Replies with the cleaned inbound text. Useful for wiring checks."""

    async def respond(self, ctx: DispatchContext, deliver: Deliver) -> None:
        await deliver(OutboundPayload(text=ctx.raw_body))


class LiteLLMResponder:
    """Single-turn LLM reply through ``litellm.acompletion``."""

    def __init__(self, config: ResponderConfig, completion: Completion | None = None) -> None:
        if not config.model:
            raise ValueError("responder.model is required for the litellm responder")
        self.config = config
        self._completion = completion

    def _acompletion(self) -> Completion:
        if self._completion is None:
            from litellm import acompletion

            self._completion = acompletion
        return self._completion

    def build_messages(self, ctx: DispatchContext) -> list[dict[str, str]]:
        system = self.config.system_prompt
        if ctx.is_group and ctx.group_subject:
            system += f"\nYou are in the group chat \"{ctx.group_subject}\"."
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": ctx.body},
        ]

    async def respond(self, ctx: DispatchContext, deliver: Deliver) -> None:
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": self.build_messages(ctx),
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
        }
        if self.config.api_key:
            kwargs["api_key"] = self.config.api_key
        if self.config.api_base:
            kwargs["api_base"] = self.config.api_base

        response = await self._acompletion()(**kwargs)
        content = (response.choices[0].message.content or "").strip()
        if not content:
            logger.warning(f"LLM returned an empty reply for {ctx.session_key}")
            return
        await deliver(OutboundPayload(text=content))


def create_responder(config: ResponderConfig) -> Responder:
    kind = (config.kind or "echo").strip().lower()
    if kind == "echo":
        return EchoResponder()
    if kind == "litellm":
        return LiteLLMResponder(config)
    raise ValueError(f"Unknown responder kind: {config.kind!r}")

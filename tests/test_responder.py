from types import SimpleNamespace

import pytest

from padbridge.agent.responder import EchoResponder, LiteLLMResponder, create_responder
from padbridge.bus.events import DispatchContext
from padbridge.config.schema import ResponderConfig


def _ctx(chat_type: str = "direct", group_subject: str | None = None) -> DispatchContext:
    return DispatchContext(
        body="[WeChatPadPro wxid_alice 2023-11-14 22:13] what's up",
        raw_body="what's up",
        from_address="wechatpadpro:wxid_alice",
        to_address="wechatpadpro:wxid_alice",
        session_key="wechatpadpro:default:direct:wxid_alice",
        account_id="default",
        chat_type=chat_type,
        conversation_label="wxid_alice",
        sender_id="wxid_alice",
        sender_name="Alice",
        message_sid="m-1",
        timestamp=1_700_000_000_000,
        group_subject=group_subject,
    )


class FakeCompletion:
    def __init__(self, content: str | None) -> None:
        self.calls: list[dict] = []
        self._content = content

    async def __call__(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self._content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


async def _collect(responder, ctx) -> list:
    delivered = []

    async def deliver(payload) -> None:
        delivered.append(payload)

    await responder.respond(ctx, deliver)
    return delivered


async def test_echo_delivers_raw_body() -> None:
    delivered = await _collect(EchoResponder(), _ctx())
    assert [p.text for p in delivered] == ["what's up"]


async def test_litellm_call_arguments() -> None:
    completion = FakeCompletion("  all good  ")
    config = ResponderConfig(kind="litellm", model="gpt-4o-mini", api_key="sk-test", max_tokens=200)

    delivered = await _collect(LiteLLMResponder(config, completion=completion), _ctx())

    assert [p.text for p in delivered] == ["all good"]
    call = completion.calls[0]
    assert call["model"] == "gpt-4o-mini"
    assert call["api_key"] == "sk-test"
    assert "api_base" not in call
    assert call["max_tokens"] == 200
    assert call["messages"][1] == {"role": "user", "content": _ctx().body}


async def test_group_subject_in_system_prompt() -> None:
    responder = LiteLLMResponder(ResponderConfig(model="m"), completion=FakeCompletion("x"))
    messages = responder.build_messages(_ctx("group", "Book Club"))
    assert 'group chat "Book Club"' in messages[0]["content"]


async def test_empty_completion_delivers_nothing() -> None:
    delivered = await _collect(LiteLLMResponder(ResponderConfig(model="m"), completion=FakeCompletion(None)), _ctx())
    assert delivered == []


def test_factory() -> None:
    assert isinstance(create_responder(ResponderConfig()), EchoResponder)
    assert isinstance(create_responder(ResponderConfig(kind="LiteLLM", model="m")), LiteLLMResponder)
    with pytest.raises(ValueError):
        create_responder(ResponderConfig(kind="litellm"))
    with pytest.raises(ValueError):
        create_responder(ResponderConfig(kind="carrier-pigeon"))

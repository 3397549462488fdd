"""Async HTTP client for the WeChatPadPro (ws861) gateway API."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from padbridge.bus.events import MSG_TYPE_TEXT
from padbridge.channels.accounts import ResolvedAccount, require_credentials
from padbridge.channels.errors import ProtocolError, TransportError
from padbridge.channels.gate import DEFAULT_AI_SUFFIX
from padbridge.channels.normalize import strip_target_prefix

SEND_TEXT_PATH = "/api/Msg/SendTxt"
UPLOAD_IMAGE_PATH = "/api/Msg/UploadImg"
SYNC_PATH = "/api/Msg/Sync"
WEBHOOK_SET_PATH = "/api/Webhook/Business/Set"
HEARTBEAT_PATH = "/api/Login/AutoHeartBeat"


@dataclass(frozen=True)
class GatewayEnvelope:
    """ws861 ``ResponseResult``: ``{Code, Success, Message?, Data?}``."""

    code: int
    success: bool
    message: str
    data: Any

    @property
    def ok(self) -> bool:
        return self.code == 0 and self.success


@dataclass(frozen=True)
class SendResult:
    ok: bool
    message_id: str | None = None


def parse_envelope(status_code: int, body: str) -> GatewayEnvelope:
    try:
        data = json.loads(body) if body else {}
    except ValueError:
        raise ProtocolError(
            f"WeChatPadPro API invalid JSON ({status_code}): {body[:200]}",
            status_code=status_code,
        ) from None
    obj = data if isinstance(data, dict) else {}
    code = obj.get("Code", obj.get("code", -1))
    try:
        code = int(code)
    except (TypeError, ValueError):
        code = -1
    message = obj.get("Message", obj.get("message"))
    return GatewayEnvelope(
        code=code,
        success=bool(obj.get("Success", obj.get("success"))),
        message="" if message is None else str(message),
        data=obj.get("Data", obj.get("data")),
    )


def _message_id(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    for key in ("messageId", "msgId", "MessageId", "NewMsgId"):
        if data.get(key) is not None:
            return str(data[key])
    return None


def _normalize_to_wxid(to: str) -> str:
    wxid = strip_target_prefix(to or "")
    if not wxid:
        raise ValueError("Wxid is required for WeChatPadPro sends")
    return wxid


class GatewayClient:
    """Authenticated calls against one account's gateway.

    Every call raises :class:`TransportError` on network failures and
    :class:`ProtocolError` on non-2xx answers or a failed envelope.
    """

    def __init__(
        self,
        account: ResolvedAccount,
        http: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        self.account = account
        self._server_url, self._authcode = require_credentials(account)
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> GatewayClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── low-level request ────────────────────────────────────────────────

    async def _post_raw(self, path: str, body: dict[str, Any]) -> httpx.Response:
        url = f"{self._server_url}{path}"
        try:
            return await self._http.post(
                url,
                params={"authcode": self._authcode},
                json=body,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"WeChatPadPro {path} request failed: {exc}") from exc

    async def _post(self, path: str, body: dict[str, Any], what: str = "request") -> GatewayEnvelope:
        resp = await self._post_raw(path, body)
        if not resp.is_success:
            try:
                detail = parse_envelope(resp.status_code, resp.text).message
            except ProtocolError:
                detail = ""
            raise ProtocolError(
                f"WeChatPadPro {what} failed: {detail or resp.text[:200] or f'HTTP {resp.status_code}'}",
                status_code=resp.status_code,
            )
        envelope = parse_envelope(resp.status_code, resp.text)
        if not envelope.ok:
            raise ProtocolError(
                f"WeChatPadPro API error: {envelope.message or f'Code={envelope.code}'}",
                status_code=resp.status_code,
                code=envelope.code,
            )
        return envelope

    # ── messages ─────────────────────────────────────────────────────────

    def _ai_suffix(self) -> str:
        suffix = self.account.config.ai_suffix
        return DEFAULT_AI_SUFFIX if suffix is None else suffix

    async def send_text(
        self,
        to: str,
        text: str,
        at: str | None = None,
        msg_type: int = MSG_TYPE_TEXT,
        append_ai_suffix: bool = True,
    ) -> SendResult:
        """POST /api/Msg/SendTxt. ``at`` is a comma-separated wxid list for group mentions."""
        to_wxid = _normalize_to_wxid(to)
        if not (text or "").strip():
            raise ValueError("Message must be non-empty for WeChatPadPro sends")

        message = text.strip()
        suffix = self._ai_suffix()
        if append_ai_suffix and suffix and not message.endswith(suffix):
            message += suffix

        body: dict[str, Any] = {
            "Wxid": self.account.self_id,
            "ToWxid": to_wxid,
            "Content": message,
            "Type": msg_type,
        }
        if at and msg_type == MSG_TYPE_TEXT:
            body["At"] = at

        envelope = await self._post(SEND_TEXT_PATH, body, what="send")
        result = SendResult(ok=True, message_id=_message_id(envelope.data))
        logger.debug(f"[wechatpadpro:{self.account.account_id}] sent {result.message_id or 'unknown'} to {to_wxid}")
        return result

    async def send_image(self, to: str, base64_data: str) -> SendResult:
        """POST /api/Msg/UploadImg; a ``data:...;base64,`` prefix is stripped."""
        to_wxid = _normalize_to_wxid(to)
        if not (base64_data or "").strip():
            raise ValueError("Base64 image data is required for WeChatPadPro image sends")
        payload = base64_data.split(",", 1)[1] if "," in base64_data else base64_data
        envelope = await self._post(UPLOAD_IMAGE_PATH, {"ToWxid": to_wxid, "Base64": payload}, what="image send")
        logger.debug(f"[wechatpadpro:{self.account.account_id}] sent image to {to_wxid}")
        return SendResult(ok=True, message_id=_message_id(envelope.data))

    # ── sync / registration ──────────────────────────────────────────────

    async def sync(self) -> Any:
        """POST /api/Msg/Sync; returns the decoded payload (``{}`` for an empty body)."""
        body: dict[str, Any] = {"Scene": 0, "Synckey": ""}
        if self.account.self_id:
            body = {"Wxid": self.account.self_id, **body}
        resp = await self._post_raw(SYNC_PATH, body)
        if not resp.is_success:
            raise ProtocolError(f"WeChatPadPro sync failed (HTTP {resp.status_code})", status_code=resp.status_code)
        if not resp.text:
            return {}
        try:
            return json.loads(resp.text)
        except ValueError:
            raise ProtocolError(
                f"WeChatPadPro sync invalid JSON: {resp.text[:200]}", status_code=resp.status_code,
            ) from None

    async def register_webhook(self, sync_message_url: str) -> None:
        """Point the gateway's business callback at our webhook route."""
        resp = await self._post_raw(WEBHOOK_SET_PATH, {"syncMessageUrl": sync_message_url})
        if not resp.is_success:
            raise ProtocolError(
                f"Webhook/Business/Set failed ({resp.status_code}): {resp.text[:200]}",
                status_code=resp.status_code,
            )

    async def start_heartbeat(self) -> None:
        resp = await self._post_raw(HEARTBEAT_PATH, {})
        if not resp.is_success:
            raise ProtocolError(
                f"AutoHeartBeat failed ({resp.status_code}): {resp.text[:200]}",
                status_code=resp.status_code,
            )

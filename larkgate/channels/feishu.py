"""Feishu (Lark) channel: webhook payload parsing, tenant token, file fetch, replies."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import httpx
from loguru import logger

from larkgate.bus.events import ChatKind, InboundEvent, MessageKind, OutboundMessage
from larkgate.channels.base import BaseChannel
from larkgate.config import FeishuConfig
from larkgate.errors import AuthError, DeliveryError, MediaError

MESSAGE_EVENT_TYPE = "im.message.receive_v1"
USER_AGENT = "larkgate/0.1"

_TOKEN_PATH = "/open-apis/auth/v3/tenant_access_token/internal"
_MESSAGES_PATH = "/open-apis/im/v1/messages"
_TOKEN_REFRESH_MARGIN_SECONDS = 60

_MESSAGE_KINDS = {
    "text": MessageKind.TEXT,
    "audio": MessageKind.AUDIO,
}


@dataclass(frozen=True)
class FileRef:
    """Opaque handle to a message attachment on the platform."""
    message_id: str
    file_key: str


# ==================== Inbound parsing ====================


def _parse_content(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {"text": str(raw)}
    return parsed if isinstance(parsed, dict) else {"text": str(parsed)}


def _mention_identities(mentions: list[dict[str, Any]] | None) -> frozenset[str]:
    identities: set[str] = set()
    for mention in mentions or []:
        if mention.get("name"):
            identities.add(str(mention["name"]))
        ids = mention.get("id") or {}
        if isinstance(ids, dict):
            for key in ("open_id", "user_id", "union_id"):
                if ids.get(key):
                    identities.add(str(ids[key]))
        elif ids:
            identities.add(str(ids))
    return frozenset(identities)


def parse_event(payload: dict[str, Any]) -> InboundEvent | None:
    """Build an :class:`InboundEvent` from a ``im.message.receive_v1`` callback body.

    Returns None when required fields are missing.
    """
    try:
        header = payload["header"]
        event = payload["event"]
        message = event["message"]
        sender = event.get("sender") or {}
        sender_ids = sender.get("sender_id") or {}

        event_id = str(header["event_id"])
        chat_id = str(message["chat_id"])
        sender_id = str(sender_ids.get("user_id") or sender_ids.get("open_id") or "")
        created_ms = int(message["create_time"])
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Feishu: malformed message payload ({type(e).__name__}: {e})")
        return None

    chat_type = str(message.get("chat_type", "p2p"))
    return InboundEvent(
        event_id=event_id,
        session_id=f"{chat_id}:{sender_id}",
        chat_id=chat_id,
        sender_id=sender_id,
        created_at=datetime.fromtimestamp(created_ms / 1000, tz=timezone.utc),
        sender_is_bot=sender.get("sender_type") == "bot",
        chat_kind=ChatKind.GROUP if chat_type == "group" else ChatKind.DIRECT,
        mentions=_mention_identities(message.get("mentions")),
        message_kind=_MESSAGE_KINDS.get(str(message.get("message_type", "")), MessageKind.UNSUPPORTED),
        message_id=str(message.get("message_id", "")),
        raw_content=_parse_content(message.get("content")),
    )


def build_message_body(chat_id: str, content: str, post_threshold_chars: int = 500) -> dict[str, Any]:
    """Long replies go out as ``post`` rich text, short ones as plain ``text``."""
    if len(content) > post_threshold_chars:
        msg_type = "post"
        msg_content: dict[str, Any] = {
            "post": {"zh_cn": {"content": [[{"tag": "text", "text": content}]]}},
        }
    else:
        msg_type = "text"
        msg_content = {"text": content}
    return {
        "receive_id": chat_id,
        "msg_type": msg_type,
        "content": json.dumps(msg_content, ensure_ascii=False),
    }


# ==================== Open API client ====================


class FeishuClient:
    """Async client for the handful of Feishu Open API calls the gateway needs."""

    def __init__(self, config: FeishuConfig, http: httpx.AsyncClient | None = None):
        self.config = config
        self._http = http or httpx.AsyncClient(
            base_url=config.api_base,
            headers={"User-Agent": USER_AGENT},
            timeout=30.0,
        )
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def get_token(self) -> str:
        """Tenant access token, cached until shortly before it expires."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        try:
            resp = await self._http.post(
                _TOKEN_PATH,
                json={"app_id": self.config.app_id, "app_secret": self.config.app_secret},
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise AuthError(f"tenant token request failed: {e}", status_code=_status_of(e)) from e

        if data.get("code", 0) != 0 or not data.get("tenant_access_token"):
            raise AuthError(f"tenant token rejected: {data.get('msg', 'unknown error')}")

        self._token = str(data["tenant_access_token"])
        expire = int(data.get("expire", 0) or 0)
        self._token_expires_at = time.monotonic() + max(0, expire - _TOKEN_REFRESH_MARGIN_SECONDS)
        logger.debug(f"Feishu: tenant token refreshed (expires in {expire}s)")
        return self._token

    async def fetch_file(self, ref: FileRef, token: str) -> AsyncIterator[bytes]:
        """Stream an attachment's bytes."""
        url = f"{_MESSAGES_PATH}/{ref.message_id}/resources/{ref.file_key}"
        try:
            async with self._http.stream(
                "GET",
                url,
                params={"type": "file"},
                headers={"Authorization": f"Bearer {token}"},
            ) as resp:
                resp.raise_for_status()
                async for chunk in resp.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as e:
            raise MediaError(f"file fetch failed for {ref.file_key}: {e}", status_code=_status_of(e)) from e

    async def send_message(self, chat_id: str, content: str) -> None:
        body = build_message_body(chat_id, content, self.config.post_threshold_chars)
        try:
            token = await self.get_token()
            resp = await self._http.post(
                _MESSAGES_PATH,
                params={"receive_id_type": "chat_id"},
                headers={"Authorization": f"Bearer {token}"},
                json=body,
            )
            resp.raise_for_status()
            data = resp.json()
        except AuthError as e:
            raise DeliveryError(f"cannot send without token: {e}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise DeliveryError(f"send failed: {e}", status_code=_status_of(e)) from e

        if data.get("code", 0) != 0:
            raise DeliveryError(f"send rejected: {data.get('msg', 'unknown error')}")

    async def aclose(self) -> None:
        await self._http.aclose()


def _status_of(err: Exception) -> int | None:
    response = getattr(err, "response", None)
    return getattr(response, "status_code", None)


class FeishuChannel(BaseChannel):
    """Outbound replies through the Feishu messages API."""

    name = "feishu"

    def __init__(self, config: FeishuConfig, client: FeishuClient | None = None):
        super().__init__(config)
        self.config: FeishuConfig = config
        self.client = client or FeishuClient(config)

    async def send(self, msg: OutboundMessage) -> None:
        logger.debug(f"Feishu: sending {len(msg.content)} chars to chat_id={msg.chat_id}")
        await self.client.send_message(msg.chat_id, msg.content)

    async def close(self) -> None:
        await self.client.aclose()

"""
Telegram Transport — Bot API client for direct chats and forum topics.

Sends go to POST {api_base_url}/bot{token}/{method} as JSON. Topic sends
carry message_thread_id; keyboards render as inline_keyboard with each
KeyboardButton.payload as callback_data.

Transport-level failures (connection errors, timeouts) are retried with
exponential backoff. An API response with ok=false raises ChannelError
immediately; 429 and 5xx responses are marked retryable for the caller.

API Docs: https://core.telegram.org/bots/api
"""
from __future__ import annotations

import structlog
from typing import Any, Optional, Union

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import ChannelError, InboundCallback, InboundMessage, Transport
from config.settings import TelegramConfig
from models.schemas import Keyboard

logger = structlog.get_logger()


def render_keyboard(keyboard: Keyboard) -> dict[str, Any]:
    return {
        "inline_keyboard": [
            [{"text": b.text, "callback_data": b.payload} for b in row]
            for row in keyboard
        ]
    }


class TelegramAdapter(Transport):
    """Telegram Bot API transport."""

    channel_name = "telegram"

    def __init__(self, config: TelegramConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.base_url = f"{config.api_base_url.rstrip('/')}/bot{config.bot_token}"
        self._client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=10.0),
                headers={"Content-Type": "application/json"},
            )
        return self._client

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _post(self, method: str, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(f"{self.base_url}/{method}", json=payload)

    async def _call(self, method: str, payload: dict[str, Any]) -> Any:
        try:
            resp = await self._post(method, payload)
        except httpx.TransportError as e:
            logger.error("telegram_transport_failed", method=method, error=str(e))
            raise ChannelError(f"Telegram {method} failed: {e}", self.channel_name, retryable=True) from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code >= 400 or not body.get("ok"):
            code = body.get("error_code", resp.status_code)
            description = body.get("description", resp.text[:500])
            logger.error("telegram_api_error", method=method, status=code, description=description)
            raise ChannelError(
                f"Telegram {method} rejected ({code}): {description}",
                self.channel_name,
                retryable=code == 429 or code >= 500,
            )
        return body.get("result")

    def _message_payload(self, chat_id: int, text: str, topic_id: Optional[int] = None,
                         keyboard: Optional[Keyboard] = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if self.config.parse_mode:
            payload["parse_mode"] = self.config.parse_mode
        if topic_id is not None:
            payload["message_thread_id"] = topic_id
        if keyboard:
            payload["reply_markup"] = render_keyboard(keyboard)
        return payload

    # ── Transport ─────────────────────────────────────────

    async def send_message(self, actor_id: int, text: str) -> Any:
        logger.debug("telegram_send", chat_id=actor_id)
        return await self._call("sendMessage", self._message_payload(actor_id, text))

    async def send_message_with_keyboard(self, actor_id: int, text: str, keyboard: Keyboard) -> Any:
        logger.debug("telegram_send", chat_id=actor_id, keyboard=True)
        return await self._call("sendMessage", self._message_payload(actor_id, text, keyboard=keyboard))

    async def send_message_to_topic(self, chat_id: int, topic_id: int, text: str) -> Any:
        logger.debug("telegram_send", chat_id=chat_id, topic_id=topic_id)
        return await self._call("sendMessage", self._message_payload(chat_id, text, topic_id))

    async def send_message_with_keyboard_to_topic(
        self, chat_id: int, topic_id: int, text: str, keyboard: Keyboard,
    ) -> Any:
        logger.debug("telegram_send", chat_id=chat_id, topic_id=topic_id, keyboard=True)
        return await self._call("sendMessage", self._message_payload(chat_id, text, topic_id, keyboard))

    async def answer_callback_query(self, callback_id: str, text: Optional[str] = None) -> Any:
        payload: dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            payload["text"] = text
        return await self._call("answerCallbackQuery", payload)

    async def copy_message(self, from_chat_id: int, message_id: int, chat_id: int,
                           topic_id: Optional[int] = None) -> Any:
        payload: dict[str, Any] = {
            "chat_id": chat_id, "from_chat_id": from_chat_id, "message_id": message_id,
        }
        if topic_id is not None:
            payload["message_thread_id"] = topic_id
        logger.debug("telegram_copy", from_chat_id=from_chat_id, chat_id=chat_id, topic_id=topic_id)
        return await self._call("copyMessage", payload)

    async def create_topic(self, chat_id: int, name: str) -> int:
        # Topic names are capped at 128 characters by the Bot API
        result = await self._call("createForumTopic", {"chat_id": chat_id, "name": name[:128]})
        topic_id = int(result["message_thread_id"])
        logger.info("telegram_topic_created", chat_id=chat_id, topic_id=topic_id)
        return topic_id

    # ── Inbound ───────────────────────────────────────────

    @staticmethod
    def parse_update(update: dict[str, Any]) -> Optional[Union[InboundMessage, InboundCallback]]:
        """Normalize a Telegram update; None for update kinds the bot does not handle."""
        if "callback_query" in update:
            query = update["callback_query"]
            message = query.get("message") or {}
            return InboundCallback(
                sender_id=query["from"]["id"],
                chat_id=(message.get("chat") or {}).get("id", query["from"]["id"]),
                payload=query.get("data", ""),
                callback_id=str(query.get("id", "")),
                topic_id=message.get("message_thread_id") if message.get("is_topic_message") else None,
                raw=update,
            )

        message = update.get("message")
        if message and "text" in message and "from" in message:
            sender = message["from"]
            full_name = " ".join(
                part for part in (sender.get("first_name"), sender.get("last_name")) if part
            )
            return InboundMessage(
                sender_id=sender["id"],
                chat_id=message["chat"]["id"],
                text=message["text"],
                topic_id=message.get("message_thread_id") if message.get("is_topic_message") else None,
                full_name=full_name,
                message_id=message.get("message_id"),
                raw=update,
            )

        logger.debug("telegram_update_skipped", update_id=update.get("update_id"))
        return None

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

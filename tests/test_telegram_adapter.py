"""Tests for the Telegram Bot API transport."""
import json
import httpx
import pytest
from tenacity import wait_none

from channels.base import ChannelError, Destination, InboundCallback, InboundMessage
from channels.telegram_adapter import TelegramAdapter
from config.settings import TelegramConfig
from models.schemas import KeyboardButton


@pytest.fixture(autouse=True)
def _no_retry_wait(monkeypatch):
    monkeypatch.setattr(TelegramAdapter._post.retry, "wait", wait_none())


def _adapter(handler) -> TelegramAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TelegramAdapter(TelegramConfig(bot_token="TOKEN"), client=client)


def _ok(request):
    return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})


class TestSends:
    @pytest.fixture
    def requests(self):
        return []

    @pytest.fixture
    def adapter(self, requests):
        def handler(request):
            requests.append(request)
            return _ok(request)
        return _adapter(handler)

    @pytest.mark.asyncio
    async def test_send_message(self, adapter, requests):
        result = await adapter.send_message(42, "Hello")
        assert result == {"message_id": 1}
        assert str(requests[0].url) == "https://api.telegram.org/botTOKEN/sendMessage"
        assert json.loads(requests[0].content) == {"chat_id": 42, "text": "Hello", "parse_mode": "HTML"}

    @pytest.mark.asyncio
    async def test_keyboard_renders_inline_buttons(self, adapter, requests):
        keyboard = [[KeyboardButton(text="Start", payload="start_btn")]]
        await adapter.send_message_with_keyboard(42, "Welcome", keyboard)
        body = json.loads(requests[0].content)
        assert body["reply_markup"] == {
            "inline_keyboard": [[{"text": "Start", "callback_data": "start_btn"}]],
        }

    @pytest.mark.asyncio
    async def test_topic_sends_carry_thread_id(self, adapter, requests):
        keyboard = [[KeyboardButton(text="A", payload="a")]]
        await adapter.send_message_to_topic(-100, 55, "In topic")
        await adapter.send_message_with_keyboard_to_topic(-100, 55, "Pick", keyboard)
        first, second = (json.loads(r.content) for r in requests)
        assert (first["chat_id"], first["message_thread_id"]) == (-100, 55)
        assert "reply_markup" not in first
        assert second["message_thread_id"] == 55
        assert second["reply_markup"]["inline_keyboard"][0][0]["callback_data"] == "a"

    @pytest.mark.asyncio
    async def test_deliver_to_topic(self, adapter, requests):
        await adapter.deliver(Destination.topic(-100, 9), "Hi")
        assert json.loads(requests[0].content)["message_thread_id"] == 9

    @pytest.mark.asyncio
    async def test_answer_callback_query(self, adapter, requests):
        await adapter.answer_callback_query("cb-1")
        assert requests[0].url.path.endswith("/answerCallbackQuery")
        assert json.loads(requests[0].content) == {"callback_query_id": "cb-1"}

    @pytest.mark.asyncio
    async def test_copy_message_into_topic(self, adapter, requests):
        await adapter.copy_message(42, 10, -100, topic_id=55)
        await adapter.copy_message(-100, 20, 42)
        assert requests[0].url.path.endswith("/copyMessage")
        assert json.loads(requests[0].content) == {
            "chat_id": -100, "from_chat_id": 42, "message_id": 10, "message_thread_id": 55,
        }
        assert "message_thread_id" not in json.loads(requests[1].content)

    @pytest.mark.asyncio
    async def test_create_topic_returns_thread_id(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"ok": True, "result": {"message_thread_id": 77, "name": "Ann"}})

        adapter = _adapter(handler)
        assert await adapter.create_topic(-100, "A" * 200) == 77
        body = json.loads(requests[0].content)
        assert requests[0].url.path.endswith("/createForumTopic")
        assert (body["chat_id"], len(body["name"])) == (-100, 128)



class TestFailures:
    @pytest.mark.asyncio
    async def test_api_error_is_not_retryable(self):
        adapter = _adapter(lambda r: httpx.Response(
            400, json={"ok": False, "error_code": 400, "description": "Bad Request: chat not found"}))
        with pytest.raises(ChannelError) as exc:
            await adapter.send_message(42, "x")
        assert exc.value.retryable is False
        assert "chat not found" in str(exc.value)
        assert exc.value.channel == "telegram"

    @pytest.mark.asyncio
    async def test_rate_limit_is_retryable(self):
        adapter = _adapter(lambda r: httpx.Response(
            429, json={"ok": False, "error_code": 429, "description": "Too Many Requests"}))
        with pytest.raises(ChannelError) as exc:
            await adapter.send_message(42, "x")
        assert exc.value.retryable is True

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        adapter = _adapter(handler)
        with pytest.raises(ChannelError) as exc:
            await adapter.send_message(42, "x")
        assert len(attempts) == 3
        assert exc.value.retryable is True

    @pytest.mark.asyncio
    async def test_recovers_after_transient_error(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return _ok(request)

        adapter = _adapter(handler)
        assert await adapter.send_message(42, "x") == {"message_id": 1}
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_close(self):
        adapter = _adapter(_ok)
        await adapter.close()
        assert adapter._client is None


class TestParseUpdate:
    def test_private_message(self):
        event = TelegramAdapter.parse_update({
            "update_id": 1,
            "message": {
                "message_id": 10,
                "from": {"id": 42, "first_name": "Ann", "last_name": "Lee"},
                "chat": {"id": 42, "type": "private"},
                "text": "/start",
            },
        })
        assert isinstance(event, InboundMessage)
        assert (event.sender_id, event.chat_id, event.topic_id) == (42, 42, None)
        assert event.full_name == "Ann Lee"
        assert event.message_id == 10
        assert event.is_command

    def test_topic_message(self):
        event = TelegramAdapter.parse_update({
            "update_id": 2,
            "message": {
                "message_id": 11,
                "message_thread_id": 55,
                "is_topic_message": True,
                "from": {"id": 7, "first_name": "Admin"},
                "chat": {"id": -100500, "type": "supergroup"},
                "text": "Ann",
            },
        })
        assert (event.chat_id, event.topic_id, event.full_name) == (-100500, 55, "Admin")
        assert not event.is_command

    def test_reply_thread_outside_forum_is_not_a_topic(self):
        event = TelegramAdapter.parse_update({
            "message": {
                "message_thread_id": 99,
                "from": {"id": 42},
                "chat": {"id": -1},
                "text": "hi",
            },
        })
        assert event.topic_id is None

    def test_callback_query(self):
        event = TelegramAdapter.parse_update({
            "update_id": 3,
            "callback_query": {
                "id": "cb-9",
                "from": {"id": 42},
                "data": "start_btn",
                "message": {"chat": {"id": 42}},
            },
        })
        assert isinstance(event, InboundCallback)
        assert (event.sender_id, event.chat_id, event.payload, event.callback_id) == \
            (42, 42, "start_btn", "cb-9")

    def test_unsupported_update(self):
        assert TelegramAdapter.parse_update({"update_id": 4, "edited_message": {}}) is None
        assert TelegramAdapter.parse_update({"message": {"from": {"id": 1}, "chat": {"id": 1}}}) is None

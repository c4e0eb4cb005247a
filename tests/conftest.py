"""Shared test fixtures for FlowBot."""
import pytest
import pytest_asyncio
from typing import Any, Optional
from unittest.mock import AsyncMock

from channels.base import Transport
from config.settings import reset_settings
from context.manager import UserContextManager
from database.store_factory import reset_store
from database.store_memory import InMemoryContextStore
from flows.engine import FlowEngine
from flows.handlers import HandlerRegistry
from flows.registry import FlowRegistry
from models.schemas import Keyboard

ACTOR_ID = 42
ADMIN_ID = 7
ADMIN_CHAT_ID = -100500


class RecordingTransport(Transport):
    """Transport that keeps every send instead of talking to Telegram."""

    channel_name = "recording"

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.copies: list[dict[str, Any]] = []
        self.topics: list[tuple[int, str]] = []

    def _record(self, kind: str, chat_id: int, text: str,
                topic_id: Optional[int] = None, keyboard: Optional[Keyboard] = None):
        self.sent.append({
            "kind": kind, "chat_id": chat_id, "topic_id": topic_id,
            "text": text, "keyboard": keyboard,
        })

    async def send_message(self, actor_id, text):
        self._record("direct", actor_id, text)

    async def send_message_with_keyboard(self, actor_id, text, keyboard):
        self._record("direct_keyboard", actor_id, text, keyboard=keyboard)

    async def send_message_to_topic(self, chat_id, topic_id, text):
        self._record("topic", chat_id, text, topic_id=topic_id)

    async def send_message_with_keyboard_to_topic(self, chat_id, topic_id, text, keyboard):
        self._record("topic_keyboard", chat_id, text, topic_id=topic_id, keyboard=keyboard)

    async def copy_message(self, from_chat_id, message_id, chat_id, topic_id=None):
        self.copies.append({
            "from_chat_id": from_chat_id, "message_id": message_id,
            "chat_id": chat_id, "topic_id": topic_id,
        })

    async def create_topic(self, chat_id, name):
        self.topics.append((chat_id, name))
        return 1000 + len(self.topics)

    @property
    def texts(self) -> list[str]:
        return [m["text"] for m in self.sent]

    @property
    def last(self) -> dict[str, Any]:
        return self.sent[-1]


@pytest.fixture(autouse=True)
def _reset_singletons():
    reset_settings()
    reset_store()
    yield
    reset_settings()
    reset_store()


@pytest.fixture
def store() -> InMemoryContextStore:
    s = InMemoryContextStore()
    s.register_actor(ACTOR_ID, 1)
    s.register_actor(ADMIN_ID, 2)
    return s


@pytest.fixture
def manager(store) -> UserContextManager:
    return UserContextManager(store)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def handlers() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def make_engine(manager, transport, handlers, sleep):
    """Build a FlowEngine over a frozen registry loaded from a config dict."""
    def _make(config: dict[str, Any], **kwargs) -> FlowEngine:
        registry = FlowRegistry()
        registry.register_from_config(config)
        registry.freeze()
        kwargs.setdefault("sleep", sleep)
        return FlowEngine(manager, transport, registry, handlers, **kwargs)
    return _make


@pytest_asyncio.fixture
async def actor_context(manager):
    return await manager.get_or_create_context(ACTOR_ID, 1)


@pytest_asyncio.fixture
async def admin_context(manager):
    return await manager.get_or_create_context(ADMIN_ID, 2)

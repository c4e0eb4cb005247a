"""Tests for UpdateRouter: commands, topics, identity, flow input and forwarding."""
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock

from channels.base import InboundCallback, InboundMessage
from core.router import UNKNOWN_COMMAND_REPLY, UpdateRouter
from flows.results import StepResult

ACTOR_ID = 42
ADMIN_ID = 7
ADMIN_CHAT_ID = -100500
TOPIC_ID = 55

ROUTER_CONFIG = {
    "callback_actions": {
        "open_help": {"action": "start_flow", "flow_name": "help"},
    },
    "commands": [
        {"name": "/start", "flow_name": "onboarding"},
        {"name": "/status", "handler_name": "status_report"},
        {"name": "/missing", "handler_name": "not_registered"},
    ],
    "flows": [
        {"name": "onboarding", "steps": [
            {"type": "wait_input", "id": "ask_name", "text": "Name?",
             "save_to_variable": "human.name", "next_step_id": "thanks"},
            {"type": "message", "id": "thanks", "text": "Thanks!"},
        ]},
        {"name": "help", "steps": [{"type": "message", "text": "Help text"}]},
    ],
}


def message(text, sender_id=ACTOR_ID, chat_id=None, topic_id=None):
    return InboundMessage(sender_id=sender_id, chat_id=chat_id or sender_id,
                          text=text, topic_id=topic_id, full_name="Ann Lee")


def callback(payload, sender_id=ACTOR_ID, chat_id=None, topic_id=None):
    return InboundCallback(sender_id=sender_id, chat_id=chat_id or sender_id,
                           payload=payload, callback_id="cb", topic_id=topic_id)


@pytest.fixture
def forward():
    return AsyncMock()


@pytest.fixture
def engine(make_engine):
    return make_engine(ROUTER_CONFIG, admin_chat_id=ADMIN_CHAT_ID)


@pytest.fixture
def router(engine, manager, handlers, transport, forward, store):
    return UpdateRouter(
        engine, manager, engine.registry, handlers, transport,
        admin_chat_id=ADMIN_CHAT_ID,
        forward=forward,
        register_actor=lambda event: store.add_human(event.sender_id, event.full_name),
    )


class TestCommands:
    def test_command_name(self):
        assert UpdateRouter.command_name("/start") == "/start"
        assert UpdateRouter.command_name("/start@flowbot deep-link") == "/start"
        assert UpdateRouter.command_name("") == ""

    @pytest.mark.asyncio
    async def test_flow_command(self, router, manager, transport):
        outcome = await router.route(message("/start"))
        assert outcome.route == "command"
        assert outcome.result.is_ok
        assert transport.texts == ["Name?"]
        assert (await manager.get_context(ACTOR_ID)).current_flow == "onboarding"

    @pytest.mark.asyncio
    async def test_bot_mention_is_stripped(self, router, transport):
        outcome = await router.route(message("/start@flowbot"))
        assert outcome.route == "command"
        assert transport.texts == ["Name?"]

    @pytest.mark.asyncio
    async def test_unknown_command_reply(self, router, transport):
        outcome = await router.route(message("/nope"))
        assert outcome.route == "unknown_command"
        assert transport.last == {"kind": "direct", "chat_id": ACTOR_ID, "topic_id": None,
                                  "text": UNKNOWN_COMMAND_REPLY, "keyboard": None}

    @pytest.mark.asyncio
    async def test_unknown_command_in_topic_replies_in_topic(self, router, transport):
        await router.route(message("/nope", sender_id=ADMIN_ID, chat_id=ADMIN_CHAT_ID, topic_id=TOPIC_ID))
        assert (transport.last["kind"], transport.last["topic_id"]) == ("topic", TOPIC_ID)

    @pytest.mark.asyncio
    async def test_first_command_registers_actor(self, router, store, transport):
        outcome = await router.route(message("/start", sender_id=500))
        assert outcome.result.is_ok
        assert await store.resolve_internal_id(500) is not None
        assert transport.last["chat_id"] == 500

    @pytest.mark.asyncio
    async def test_unknown_actor_without_registrar(self, engine, manager, handlers, transport):
        router = UpdateRouter(engine, manager, engine.registry, handlers, transport)
        outcome = await router.route(message("/start", sender_id=500))
        assert outcome.route == "unknown_actor"
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_handler_command_gets_text(self, router, handlers):
        seen = []
        handlers.add("status_report", lambda eid, mgr, text: seen.append((eid, text)))
        outcome = await router.route(message("/status now"))
        assert outcome.result.is_ok
        assert seen == [(ACTOR_ID, "/status now")]

    @pytest.mark.asyncio
    async def test_failing_handler_command(self, router, handlers):
        def status_report(eid, mgr):
            raise RuntimeError("boom")
        handlers.add("status_report", status_report)
        outcome = await router.route(message("/status"))
        assert outcome.result.is_failed
        assert outcome.result.reason == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_missing_handler_command(self, router):
        outcome = await router.route(message("/missing"))
        assert outcome.result == StepResult.failed("handler_not_found")


class TestActorEvents:
    @pytest.mark.asyncio
    async def test_unknown_actor_is_dropped(self, router, forward):
        outcome = await router.route(message("hello", sender_id=500))
        assert outcome.route == "unknown_actor"
        forward.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_flow_message(self, router, manager, transport):
        await router.route(message("/start"))
        outcome = await router.route(message("Ann"))
        assert outcome.route == "flow_message"
        assert transport.last["text"] == "Thanks!"
        assert await manager.get_variable(ACTOR_ID, "human.name") == "Ann"

    @pytest.mark.asyncio
    async def test_callback(self, router, transport):
        outcome = await router.route(callback("open_help"))
        assert outcome.route == "flow_callback"
        assert outcome.result.is_ok
        assert transport.texts == ["Help text"]

    @pytest.mark.asyncio
    async def test_idle_message_is_forwarded(self, router, forward):
        event = message("hello")
        outcome = await router.route(event)
        assert outcome.route == "forwarded"
        forward.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    async def test_forwarding_disabled(self, router, manager, forward):
        await manager.get_or_create_context(ACTOR_ID, 1)
        await manager.disable_message_forwarding(ACTOR_ID)
        outcome = await router.route(message("hello"))
        assert outcome.route == "dropped"
        forward.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_forward_failure(self, router, forward):
        forward.side_effect = RuntimeError("topic closed")
        outcome = await router.route(message("hello"))
        assert outcome.route == "forward_failed"

    @pytest.mark.asyncio
    async def test_without_forwarder(self, engine, manager, handlers, transport):
        router = UpdateRouter(engine, manager, engine.registry, handlers, transport)
        assert (await router.route(message("hello"))).route == "dropped"


class TestTopics:
    @pytest_asyncio.fixture
    async def in_topic_flow(self, engine, manager):
        await manager.get_or_create_context(ADMIN_ID, 2)
        await engine.start_topic_flow(ADMIN_ID, TOPIC_ID, "onboarding", target_user_id=ACTOR_ID)

    @pytest.mark.asyncio
    async def test_topic_message_feeds_flow(self, router, manager, transport, in_topic_flow):
        event = message("Ann", sender_id=ADMIN_ID, chat_id=ADMIN_CHAT_ID, topic_id=TOPIC_ID)
        outcome = await router.route(event)
        assert outcome.route == "topic_message"
        assert await manager.get_variable(ADMIN_ID, "human.name") == "Ann"
        assert (transport.last["text"], transport.last["topic_id"]) == ("Thanks!", TOPIC_ID)

    @pytest.mark.asyncio
    async def test_other_topic_is_forwarded(self, router, forward, in_topic_flow):
        event = message("note", sender_id=ADMIN_ID, chat_id=ADMIN_CHAT_ID, topic_id=TOPIC_ID + 1)
        outcome = await router.route(event)
        assert outcome.route == "forwarded"
        forward.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    async def test_topic_callback(self, router, manager, in_topic_flow):
        event = callback("open_help", sender_id=ADMIN_ID, chat_id=ADMIN_CHAT_ID, topic_id=TOPIC_ID)
        outcome = await router.route(event)
        assert outcome.route == "topic_callback"
        assert (await manager.get_context(ADMIN_ID)).is_idle

    @pytest.mark.asyncio
    async def test_callback_in_other_topic_falls_through(self, router, in_topic_flow):
        event = callback("open_help", sender_id=ADMIN_ID, chat_id=ADMIN_CHAT_ID, topic_id=TOPIC_ID + 1)
        outcome = await router.route(event)
        assert outcome.route == "flow_callback"

"""
Channel Transport — Outbound contract the flow engine sends through.

Provides:
- ChannelError: structured transport failure
- Destination: where a flow's output goes (the actor's direct chat or a forum topic)
- Transport: abstract base with the four send primitives and deliver(),
  plus optional copy_message / create_topic for relaying through forum topics
- InboundMessage / InboundCallback: normalized inbound events for the router
"""
from __future__ import annotations

import abc
import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

from models.schemas import Keyboard, UserContext

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


# ══════════════════════════════════════════════════════════════
#  DESTINATION
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Destination:
    """
    A direct chat with an actor (topic_id is None) or a topic inside a
    forum chat, used while an admin conducts a flow on a user's behalf.
    """
    chat_id: int
    topic_id: Optional[int] = None

    @classmethod
    def direct(cls, actor_id: int) -> "Destination":
        return cls(chat_id=actor_id)

    @classmethod
    def topic(cls, chat_id: int, topic_id: int) -> "Destination":
        return cls(chat_id=chat_id, topic_id=topic_id)

    @classmethod
    def for_context(cls, context: UserContext) -> "Destination":
        if context.flow_in_topic:
            return cls.topic(context.admin_chat_id, context.topic_id)
        return cls.direct(context.external_id)

    @property
    def is_topic(self) -> bool:
        return self.topic_id is not None


# ══════════════════════════════════════════════════════════════
#  TRANSPORT
# ══════════════════════════════════════════════════════════════

class Transport(abc.ABC):
    """
    Abstract outbound transport. Implementations raise ChannelError when a
    send fails for good; the engine logs and drops the event.
    """

    channel_name: str = ""

    @abc.abstractmethod
    async def send_message(self, actor_id: int, text: str) -> Any:
        ...

    @abc.abstractmethod
    async def send_message_with_keyboard(self, actor_id: int, text: str, keyboard: Keyboard) -> Any:
        ...

    @abc.abstractmethod
    async def send_message_to_topic(self, chat_id: int, topic_id: int, text: str) -> Any:
        ...

    @abc.abstractmethod
    async def send_message_with_keyboard_to_topic(
        self, chat_id: int, topic_id: int, text: str, keyboard: Keyboard,
    ) -> Any:
        ...

    async def deliver(self, destination: Destination, text: str,
                      keyboard: Optional[Keyboard] = None) -> Any:
        """Route one outbound message to the right primitive."""
        if destination.is_topic:
            if keyboard:
                return await self.send_message_with_keyboard_to_topic(
                    destination.chat_id, destination.topic_id, text, keyboard)
            return await self.send_message_to_topic(destination.chat_id, destination.topic_id, text)
        if keyboard:
            return await self.send_message_with_keyboard(destination.chat_id, text, keyboard)
        return await self.send_message(destination.chat_id, text)

    # ── Relaying (forum chats only) ──────────────────────

    async def copy_message(self, from_chat_id: int, message_id: int, chat_id: int,
                           topic_id: Optional[int] = None) -> Any:
        """Re-send an existing message to chat_id (and topic_id) without a forward header."""
        raise ChannelError(f"{type(self).__name__} cannot copy messages", self.channel_name)

    async def create_topic(self, chat_id: int, name: str) -> int:
        """Open a topic in a forum chat; returns its topic id."""
        raise ChannelError(f"{type(self).__name__} cannot create topics", self.channel_name)


# ══════════════════════════════════════════════════════════════
#  INBOUND EVENTS
# ══════════════════════════════════════════════════════════════

@dataclass
class InboundMessage:
    """A text message as seen by the router."""
    sender_id: int
    chat_id: int
    text: str
    topic_id: Optional[int] = None
    full_name: str = ""
    message_id: Optional[int] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_command(self) -> bool:
        return self.text.startswith("/")


@dataclass
class InboundCallback:
    """A button press as seen by the router."""
    sender_id: int
    chat_id: int
    payload: str
    callback_id: str = ""
    topic_id: Optional[int] = None
    raw: dict[str, Any] = field(default_factory=dict)

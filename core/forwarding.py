"""
Topic Forwarder — Relays free messages between actors and their support topic.

Each actor owns one topic in the admin forum chat, recorded in the actor's
data at SUPPORT_TOPIC_PATH:

  actor's direct chat  → copyMessage into the actor's topic (opened on first use)
  admin reply in topic → copyMessage back to the actor owning that topic

UpdateRouter calls the forwarder only for messages that are not part of a
flow, and for actor messages only while message_forwarding_enabled is set.
"""
from __future__ import annotations

import structlog
from typing import Optional, Union

from channels.base import InboundCallback, InboundMessage, Transport
from context.manager import UserContextManager

logger = structlog.get_logger()

SUPPORT_TOPIC_PATH = "support.topic_id"


class TopicForwarder:
    """
    Usage:
        forward = TopicForwarder(manager, transport, admin_chat_id=-100123)
        router = UpdateRouter(..., forward=forward)
    """

    def __init__(self, manager: UserContextManager, transport: Transport, admin_chat_id: int):
        self.manager = manager
        self.transport = transport
        self.admin_chat_id = admin_chat_id
        self._owners: dict[int, int] = {}      # topic_id → external_id

    async def __call__(self, event: Union[InboundMessage, InboundCallback]) -> bool:
        """True when the message was relayed."""
        if not isinstance(event, InboundMessage) or event.message_id is None:
            logger.debug("forward_skipped", sender_id=event.sender_id)
            return False
        if event.chat_id == self.admin_chat_id and event.topic_id is not None:
            return await self._to_actor(event)
        return await self._to_topic(event)

    async def bind_topic(self, external_id: int, topic_id: int) -> None:
        await self.manager.set_variable(external_id, SUPPORT_TOPIC_PATH, topic_id)
        self._owners[topic_id] = external_id

    async def topic_owner(self, topic_id: int) -> Optional[int]:
        owner = self._owners.get(topic_id)
        if owner is None:
            owner = await self.manager.find_actor_by_variable(SUPPORT_TOPIC_PATH, topic_id)
            if owner is not None:
                self._owners[topic_id] = owner
        return owner

    async def _to_topic(self, event: InboundMessage) -> bool:
        topic_id = await self.manager.get_variable(event.sender_id, SUPPORT_TOPIC_PATH)
        if topic_id is None:
            topic_id = await self.transport.create_topic(
                self.admin_chat_id, event.full_name or str(event.sender_id))
            await self.bind_topic(event.sender_id, topic_id)
            logger.info("support_topic_opened", external_id=event.sender_id, topic_id=topic_id)

        await self.transport.copy_message(event.chat_id, event.message_id, self.admin_chat_id, topic_id)
        logger.info("message_forwarded_to_topic", external_id=event.sender_id, topic_id=topic_id)
        return True

    async def _to_actor(self, event: InboundMessage) -> bool:
        owner = await self.topic_owner(event.topic_id)
        if owner is None:
            logger.info("forward_topic_owner_unknown", topic_id=event.topic_id, sender_id=event.sender_id)
            return False

        await self.transport.copy_message(event.chat_id, event.message_id, owner)
        logger.info("message_forwarded_to_actor", external_id=owner,
                    topic_id=event.topic_id, admin_id=event.sender_id)
        return True

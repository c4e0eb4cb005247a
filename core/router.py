"""
Update Router — Decides what each inbound event means for the flow engine.

Routing order:
  1. "/commands"  → registered command (start a flow or call a handler)
  2. admin topic  → handle_topic_message / handle_topic_callback when the
                    sender's context is running a flow in that very topic
  3. identity     → unknown actors are dropped
  4. in flow      → handle_incoming_message / handle_incoming_callback
  5. otherwise    → injected forward() coroutine, when forwarding is enabled

Forwarding itself (copying a user's message into their support topic, or an
admin's topic reply back to the user) is outside the engine; the router only
decides when it applies. core.forwarding.TopicForwarder is the default forward().
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from channels.base import Destination, InboundCallback, InboundMessage, Transport
from context.manager import UserContextManager
from flows.engine import FlowEngine
from flows.handlers import HandlerNotFound, HandlerRegistry
from flows.registry import FlowRegistry
from flows.results import StepResult

logger = structlog.get_logger()

UNKNOWN_COMMAND_REPLY = "Unknown command. Use /help for list of commands."

InboundEvent = Union[InboundMessage, InboundCallback]
ForwardFn = Callable[[InboundEvent], Awaitable[Optional[bool]]]
RegisterFn = Callable[[InboundEvent], Awaitable[Optional[int]]]


@dataclass
class RouteResult:
    """Which path an event took, and the engine's result when it reached the engine."""
    route: str
    result: Optional[StepResult] = None

    def __repr__(self):
        return f"<Route {self.route} {self.result!r}>" if self.result else f"<Route {self.route}>"


class UpdateRouter:
    """
    Usage:
        router = UpdateRouter(engine, manager, registry, handlers, transport,
                              admin_chat_id=-100123, forward=forward_to_topic)
        outcome = await router.route(event)
    """

    def __init__(
        self,
        engine: FlowEngine,
        manager: UserContextManager,
        registry: FlowRegistry,
        handlers: HandlerRegistry,
        transport: Transport,
        admin_chat_id: Optional[int] = None,
        forward: Optional[ForwardFn] = None,
        register_actor: Optional[RegisterFn] = None,
    ):
        """
        Args:
            forward: async fn(event) for messages that are not part of a flow
            register_actor: async fn(event) → internal id, used by commands
                            from actors the store does not know yet
        """
        self.engine = engine
        self.manager = manager
        self.registry = registry
        self.handlers = handlers
        self.transport = transport
        self.admin_chat_id = admin_chat_id
        self._forward = forward
        self._register_actor = register_actor

    async def route(self, event: InboundEvent) -> RouteResult:
        if isinstance(event, InboundMessage) and event.is_command:
            return await self._route_command(event)

        topic_route = await self._route_topic(event)
        if topic_route is not None:
            return topic_route

        internal_id = await self.manager.store.resolve_internal_id(event.sender_id)
        if internal_id is None:
            logger.info("inbound_unknown_actor", sender_id=event.sender_id)
            return RouteResult("unknown_actor")

        context = await self.manager.get_or_create_context(event.sender_id, internal_id)
        if context is None:
            return RouteResult("dropped")

        if isinstance(event, InboundCallback):
            result = await self.engine.handle_incoming_callback(event.sender_id, event.payload)
            return RouteResult("flow_callback", result)

        if context.flow_mode:
            result = await self.engine.handle_incoming_message(event.sender_id, event.text)
            return RouteResult("flow_message", result)

        if context.message_forwarding_enabled:
            return await self._forward_event(event)

        logger.debug("inbound_dropped_forwarding_disabled", sender_id=event.sender_id)
        return RouteResult("dropped")

    # ── Commands ──────────────────────────────────────────

    @staticmethod
    def command_name(text: str) -> str:
        """'/start@my_bot payload' → '/start'"""
        head = text.split()[0] if text.split() else ""
        return head.split("@", 1)[0]

    async def _route_command(self, event: InboundMessage) -> RouteResult:
        name = self.command_name(event.text)
        command = self.registry.command(name)
        if command is None:
            logger.info("command_unknown", command=name, sender_id=event.sender_id)
            destination = (Destination.topic(event.chat_id, event.topic_id)
                           if event.topic_id is not None else Destination.direct(event.chat_id))
            await self.transport.deliver(destination, UNKNOWN_COMMAND_REPLY)
            return RouteResult("unknown_command")

        internal_id = await self.manager.store.resolve_internal_id(event.sender_id)
        if internal_id is None and self._register_actor is not None:
            internal_id = await self._register_actor(event)
        if internal_id is None:
            logger.info("command_unknown_actor", command=name, sender_id=event.sender_id)
            return RouteResult("unknown_actor")
        await self.manager.get_or_create_context(event.sender_id, internal_id)

        logger.info("command_received", command=name, sender_id=event.sender_id)
        if command.flow_name:
            result = await self.engine.start_flow(event.sender_id, command.flow_name)
            return RouteResult("command", result)

        try:
            await self.handlers.invoke(command.handler_name, event.sender_id, self.manager, event.text)
            result = StepResult.ok()
        except HandlerNotFound:
            logger.error("handler_not_found", handler=command.handler_name, command=name)
            result = StepResult.failed("handler_not_found")
        except Exception as e:
            logger.error("command_handler_failed", handler=command.handler_name,
                         command=name, error=str(e), exc_info=True)
            result = StepResult.failed(f"{type(e).__name__}: {e}")
        return RouteResult("command", result)

    # ── Admin topics ──────────────────────────────────────

    async def _route_topic(self, event: InboundEvent) -> Optional[RouteResult]:
        if self.admin_chat_id is None or event.chat_id != self.admin_chat_id or event.topic_id is None:
            return None

        context = await self.manager.get_context(event.sender_id)
        in_this_topic = bool(context and context.flow_in_topic and context.topic_id == event.topic_id)

        if isinstance(event, InboundCallback):
            if not in_this_topic:
                return None  # handled like any other callback
            result = await self.engine.handle_topic_callback(event.sender_id, event.payload)
            return RouteResult("topic_callback", result)

        if in_this_topic:
            result = await self.engine.handle_topic_message(event.sender_id, event.text)
            return RouteResult("topic_message", result)
        return await self._forward_event(event)

    # ── Forwarding ────────────────────────────────────────

    async def _forward_event(self, event: InboundEvent) -> RouteResult:
        if self._forward is None:
            return RouteResult("dropped")
        try:
            relayed = await self._forward(event)
        except Exception as e:
            logger.error("forward_failed", sender_id=event.sender_id, error=str(e), exc_info=True)
            return RouteResult("forward_failed")
        # forward() may decline explicitly; None counts as relayed
        return RouteResult("dropped" if relayed is False else "forwarded")

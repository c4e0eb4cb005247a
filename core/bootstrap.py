"""
Bootstrap — Wires the application from settings.

    store → UserContextManager → FlowRegistry (YAML, frozen)
          → TelegramAdapter → FlowEngine → UpdateRouter

With telegram.admin_chat_id set, messages outside flows are relayed through
per-actor support topics (TopicForwarder) unless a forward() is injected.

Usage:
    app = build_application()
    await app.start()
    outcome = await app.handle_update(telegram_update_dict)
    await app.close()
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any, Optional

from dotenv import load_dotenv

from channels.base import InboundCallback, Transport
from channels.telegram_adapter import TelegramAdapter
from config.settings import Settings, load_settings
from context.manager import UserContextManager
from core.forwarding import TopicForwarder
from core.handlers import create_default_handlers
from core.router import ForwardFn, InboundEvent, RouteResult, UpdateRouter
from database.store_base import BaseContextStore
from database.store_factory import create_store
from flows.engine import FlowEngine
from flows.handlers import HandlerRegistry
from flows.registry import FlowRegistry

logger = structlog.get_logger()


@dataclass
class Application:
    settings: Settings
    store: BaseContextStore
    manager: UserContextManager
    registry: FlowRegistry
    handlers: HandlerRegistry
    transport: Transport
    engine: FlowEngine
    router: UpdateRouter

    async def start(self) -> None:
        if self.settings.database.store_backend == "sql":
            from database.session import init_db
            await init_db(self.settings.database.url)
        logger.info("application_started", app=self.settings.app_name,
                    backend=self.settings.database.store_backend,
                    flows=len(self.registry.flows))

    async def handle_update(self, update: dict[str, Any]) -> RouteResult:
        """Parse and route one raw Telegram update."""
        event = TelegramAdapter.parse_update(update)
        if event is None:
            return RouteResult("skipped")
        outcome = await self.router.route(event)
        if isinstance(event, InboundCallback) and event.callback_id and hasattr(self.transport, "answer_callback_query"):
            try:
                await self.transport.answer_callback_query(event.callback_id)
            except Exception as e:
                logger.warning("answer_callback_failed", callback_id=event.callback_id, error=str(e))
        return outcome

    async def close(self) -> None:
        if hasattr(self.transport, "close"):
            await self.transport.close()
        if self.settings.database.store_backend == "sql":
            from database.session import close_db
            await close_db()
        logger.info("application_stopped")


def _actor_registrar(store: BaseContextStore):
    """/commands from first-time actors create their human record when the backend can."""
    if not hasattr(store, "add_human"):
        return None

    async def register(event: InboundEvent) -> Optional[int]:
        return await store.add_human(event.sender_id, getattr(event, "full_name", ""))
    return register


def build_application(
    settings: Optional[Settings] = None,
    handlers: Optional[HandlerRegistry] = None,
    transport: Optional[Transport] = None,
    store: Optional[BaseContextStore] = None,
    forward: Optional[ForwardFn] = None,
) -> Application:
    load_dotenv()
    settings = settings or load_settings()

    store = store or create_store(settings.database)
    manager = UserContextManager(store)
    transport = transport or TelegramAdapter(settings.telegram)
    handlers = handlers or create_default_handlers(transport)

    registry = FlowRegistry.from_yaml(settings.flows.definitions_path)
    registry.check_references(handlers.names())
    registry.freeze()

    admin_chat_id = settings.telegram.admin_chat_id
    if forward is None and admin_chat_id is not None:
        forward = TopicForwarder(manager, transport, admin_chat_id)

    engine = FlowEngine(
        manager, transport, registry, handlers,
        admin_chat_id=admin_chat_id,
        step_chain_limit=settings.flows.step_chain_limit,
    )
    router = UpdateRouter(
        engine, manager, registry, handlers, transport,
        admin_chat_id=admin_chat_id,
        forward=forward,
        register_actor=_actor_registrar(store),
    )
    logger.info("application_built", app=settings.app_name, flows=sorted(registry.flows))
    return Application(settings, store, manager, registry, handlers, transport, engine, router)

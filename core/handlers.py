"""
Default custom handlers referenced by config/flows.yaml.

Handlers that talk back to the actor need the transport, so they are built
by a factory closing over it:

    handlers = create_default_handlers(transport)
"""
from __future__ import annotations

import structlog
from typing import Any

from channels.base import Destination, Transport
from context.manager import UserContextManager
from flows.handlers import HandlerRegistry

logger = structlog.get_logger()

STATUS_SUFFIX = "_lead_status"


def _format_price(raw: Any) -> str:
    try:
        return f"{float(str(raw).replace(',', '.')):,.2f}"
    except (TypeError, ValueError):
        return str(raw)


def create_default_handlers(transport: Transport) -> HandlerRegistry:
    handlers = HandlerRegistry()

    async def reply(external_id: int, manager: UserContextManager, text: str) -> None:
        context = await manager.get_context(external_id)
        if context is None:
            return
        await transport.deliver(Destination.for_context(context), text)

    @handlers.register("set_status")
    async def set_status(external_id: int, manager: UserContextManager, payload: str) -> None:
        """Store the lead status picked from the status keyboard ("hot_lead_status" → "hot")."""
        status = payload[: -len(STATUS_SUFFIX)] if payload.endswith(STATUS_SUFFIX) else payload
        await manager.set_variable(external_id, "lead.status", status)
        logger.info("lead_status_set", external_id=external_id, status=status)
        await reply(external_id, manager, f"Status set: <b>{status}</b>")

    @handlers.register("show_offer_summary")
    async def show_offer_summary(external_id: int, manager: UserContextManager) -> None:
        offer = await manager.get_variable(external_id, "offer") or {}
        lines = [
            "<b>Your offer</b>",
            f"Title: {offer.get('title', '')}",
            f"Description: {offer.get('description', '')}",
            f"Price: {_format_price(offer.get('price', ''))}",
        ]
        await reply(external_id, manager, "\n".join(lines))

    return handlers

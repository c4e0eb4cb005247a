"""
Custom Handler Registry — Named callables invoked by handler, dynamic and
dynamic_callback steps, handler callback actions and handler commands.

A handler receives (external_id, manager) and, when it declares a third
positional parameter, the triggering payload (callback data or command text).
Handlers may be plain functions or coroutines.

Usage:
    handlers = HandlerRegistry()

    @handlers.register("show_offer_summary")
    async def show_offer_summary(external_id, manager):
        ...

    result = await handlers.invoke("show_offer_summary", external_id, manager)
"""
from __future__ import annotations

import inspect
import structlog
from typing import Any, Callable, Mapping, Optional

logger = structlog.get_logger()

Handler = Callable[..., Any]


class HandlerNotFound(KeyError):
    """No handler is registered under the requested name."""


def _accepts_payload(fn: Handler) -> bool:
    try:
        params = inspect.signature(fn).parameters.values()
    except (TypeError, ValueError):
        return False
    positional = [
        p for p in params
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
    ]
    if any(p.kind == p.VAR_POSITIONAL for p in params):
        return True
    return len(positional) >= 3


class HandlerRegistry:
    """Name → handler table."""

    def __init__(self, handlers: Optional[Mapping[str, Handler]] = None):
        self._handlers: dict[str, Handler] = {}
        for name, fn in (handlers or {}).items():
            self.add(name, fn)

    def add(self, name: str, fn: Handler):
        if not callable(fn):
            raise ValueError(f"Handler '{name}' is not callable")
        self._handlers[name] = fn
        logger.debug("handler_registered", handler=name)

    def register(self, name: str):
        """Decorator form of add()."""
        def decorator(fn: Handler) -> Handler:
            self.add(name, fn)
            return fn
        return decorator

    def get(self, name: str) -> Optional[Handler]:
        return self._handlers.get(name)

    def names(self) -> set[str]:
        return set(self._handlers)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    async def invoke(self, name: str, external_id: int, manager: Any, payload: Any = None) -> Any:
        """Call a handler, awaiting it when it is a coroutine. Handler errors propagate."""
        fn = self._handlers.get(name)
        if fn is None:
            raise HandlerNotFound(name)
        args = [external_id, manager]
        if payload is not None and _accepts_payload(fn):
            args.append(payload)
        result = fn(*args)
        if inspect.isawaitable(result):
            result = await result
        return result

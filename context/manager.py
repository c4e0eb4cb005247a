"""
User Context Manager — Per-actor conversational state on top of a context store.

Every operation is a read-modify-write against the store: load the actor's
blob, apply the change, write the whole context back. Concurrent events for
the same actor are not serialized; the last writer wins.

Architecture:
  FlowEngine / UpdateRouter
    → UserContextManager (typed UserContext, dot-path data access)
    → BaseContextStore (identity resolution + opaque JSON blob per actor)

Failures never propagate: store or serialization errors are logged and the
operation returns a neutral value (None / False / no-op).
"""
from __future__ import annotations

import copy
import functools
import json
import structlog
from typing import Any, Optional

from pydantic import ValidationError

from database.store_base import BaseContextStore
from models.schemas import StepHistoryEntry, UserContext
from utils.conditions import get_nested_value, set_nested_value

logger = structlog.get_logger()

MAX_STEP_HISTORY = 100

# Fields owned by identity resolution, never merged from callers
_IDENTITY_FIELDS = {"external_id", "human_id"}
_MUTABLE_FIELDS = set(UserContext.model_fields) - _IDENTITY_FIELDS


def _neutral_on_error(default: Any = None):
    """Log and swallow store/serialization failures, returning `default`."""
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self, external_id, *args, **kwargs):
            try:
                return await fn(self, external_id, *args, **kwargs)
            except Exception as e:
                logger.error("context_operation_failed",
                             operation=fn.__name__,
                             external_id=external_id,
                             error=str(e))
                return default
        return wrapper
    return decorator


class UserContextManager:
    """
    Typed access to the persisted UserContext of each actor.

    Usage:
        manager = UserContextManager(store)
        ctx = await manager.get_or_create_context(external_id, internal_id)
        await manager.set_variable(external_id, "human.name", "Ann")
        await manager.enter_flow_mode(external_id)
    """

    def __init__(self, store: BaseContextStore):
        self.store = store

    # ── Load / Save ───────────────────────────────────────────

    def _deserialize(self, external_id: int, internal_id: int, blob: Optional[str]) -> UserContext:
        if not blob:
            return UserContext(external_id=external_id, human_id=internal_id)
        try:
            raw = json.loads(blob)
            if not isinstance(raw, dict):
                raise ValueError(f"context blob is {type(raw).__name__}, expected object")
            raw.update(external_id=external_id, human_id=internal_id)
            return UserContext.model_validate(raw)
        except (ValueError, ValidationError) as e:
            logger.warning("context_blob_invalid", external_id=external_id, error=str(e))
            return UserContext(external_id=external_id, human_id=internal_id)

    async def _save(self, context: UserContext) -> None:
        await self.store.save_context_blob(context.external_id, context.model_dump_json())

    # ── Lifecycle ─────────────────────────────────────────────

    @_neutral_on_error()
    async def get_context(self, external_id: int) -> Optional[UserContext]:
        """Load an actor's context; None when the actor cannot be resolved."""
        internal_id = await self.store.resolve_internal_id(external_id)
        if internal_id is None:
            logger.debug("context_actor_unresolved", external_id=external_id)
            return None
        blob = await self.store.load_context_blob(external_id)
        return self._deserialize(external_id, internal_id, blob)

    @_neutral_on_error()
    async def create_context(self, external_id: int, internal_id: int) -> UserContext:
        context = UserContext(external_id=external_id, human_id=internal_id)
        await self._save(context)
        logger.info("context_created", external_id=external_id, human_id=internal_id)
        return context

    async def get_or_create_context(self, external_id: int, internal_id: int) -> Optional[UserContext]:
        context = await self.get_context(external_id)
        if context is not None:
            return context
        return await self.create_context(external_id, internal_id)

    @_neutral_on_error()
    async def update_context(self, external_id: int, **fields: Any) -> Optional[UserContext]:
        """Merge top-level fields into the stored context and persist it."""
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            logger.warning("context_update_rejected_fields",
                           external_id=external_id, fields=sorted(unknown))
            fields = {k: v for k, v in fields.items() if k in _MUTABLE_FIELDS}

        context = await self.get_context(external_id)
        if context is None:
            logger.warning("context_update_missing", external_id=external_id)
            return None

        # Re-validate so the invariant repair runs on the merged state
        merged = UserContext.model_validate({**context.model_dump(), **fields})
        await self._save(merged)
        return merged

    # ── Data bag (dot paths) ──────────────────────────────────

    @_neutral_on_error()
    async def set_variable(self, external_id: int, path: str, value: Any) -> None:
        context = await self.get_context(external_id)
        if context is None:
            logger.warning("context_set_variable_missing", external_id=external_id, path=path)
            return
        set_nested_value(context.data, path, value)
        await self._save(context)
        logger.debug("context_variable_set", external_id=external_id, path=path)

    @_neutral_on_error()
    async def get_variable(self, external_id: int, path: str) -> Any:
        context = await self.get_context(external_id)
        if context is None:
            return None
        return copy.deepcopy(get_nested_value(context.data, path))

    async def find_actor_by_variable(self, path: str, value: Any) -> Optional[int]:
        """First actor whose data holds value at path. Scans every context."""
        try:
            for external_id in await self.store.list_external_ids():
                context = await self.get_context(external_id)
                if context is not None and get_nested_value(context.data, path) == value:
                    return external_id
        except Exception as e:
            logger.error("context_operation_failed", operation="find_actor_by_variable",
                         path=path, error=str(e))
        return None

    # ── Forwarding ────────────────────────────────────────────

    async def enable_message_forwarding(self, external_id: int) -> None:
        await self.update_context(external_id, message_forwarding_enabled=True)
        logger.info("message_forwarding_enabled", external_id=external_id)

    async def disable_message_forwarding(self, external_id: int) -> None:
        await self.update_context(external_id, message_forwarding_enabled=False)
        logger.info("message_forwarding_disabled", external_id=external_id)

    @_neutral_on_error(default=True)
    async def is_message_forwarding_enabled(self, external_id: int) -> bool:
        context = await self.get_context(external_id)
        return context.message_forwarding_enabled if context else True

    # ── Flow mode ─────────────────────────────────────────────

    async def enter_flow_mode(self, external_id: int) -> None:
        """Flow mode and forwarding are always written together, as negations."""
        await self.update_context(external_id, flow_mode=True, message_forwarding_enabled=False)
        logger.info("flow_mode_entered", external_id=external_id)

    async def exit_flow_mode(self, external_id: int) -> None:
        await self.update_context(external_id, flow_mode=False, message_forwarding_enabled=True)
        logger.info("flow_mode_exited", external_id=external_id)

    @_neutral_on_error(default=False)
    async def is_in_flow_mode(self, external_id: int) -> bool:
        context = await self.get_context(external_id)
        return context.flow_mode if context else False

    # ── Step tracking ─────────────────────────────────────────

    @_neutral_on_error()
    async def record_step(self, external_id: int, flow_name: str, step_index: int) -> Optional[UserContext]:
        """Set current_step and append to step_history in a single write."""
        context = await self.get_context(external_id)
        if context is None:
            logger.warning("context_record_step_missing", external_id=external_id)
            return None
        context.current_step = step_index
        context.step_history.append(StepHistoryEntry(flow=flow_name, step=step_index))
        if len(context.step_history) > MAX_STEP_HISTORY:
            context.step_history = context.step_history[-MAX_STEP_HISTORY:]
        await self._save(context)
        return context

"""
Callback Router — Classifies button payloads and builds the payloads the
engine attaches to generated buttons.

Resolution order for an inbound payload:
  1. Literal payload registered in callback_actions
  2. Dynamic sentinel prefix "dc_" (buttons of a dynamic_callback step)
  3. JSON object (buttons of a callback step, or hand-built action payloads)
  4. Keyboard fallback (static keyboard on the current message step)

The router only classifies; FlowEngine applies the result to the actor.
"""
from __future__ import annotations

import json
import structlog
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError

from flows.models import CallbackStep, DynamicCallbackStep, Flow
from flows.registry import FlowRegistry
from models.schemas import CallbackAction, DynamicMenu, Keyboard, KeyboardButton

logger = structlog.get_logger()

DYNAMIC_SENTINEL = "dc_"
MAX_CALLBACK_BYTES = 64          # Telegram callback_data limit


class CallbackKind(str, Enum):
    REGISTERED = "registered"
    DYNAMIC = "dynamic"
    JSON = "json"
    KEYBOARD = "keyboard"


@dataclass
class ResolvedCallback:
    kind: CallbackKind
    payload: str
    action: Optional[CallbackAction] = None


def _truncate_utf8(text: str, max_bytes: int) -> str:
    return text.encode("utf-8")[:max(max_bytes, 0)].decode("utf-8", "ignore")


class CallbackRouter:
    """Stateless payload classifier over a frozen FlowRegistry."""

    def __init__(self, registry: FlowRegistry):
        self.registry = registry

    # ── Inbound ───────────────────────────────────────

    def resolve(self, payload: str) -> ResolvedCallback:
        action = self.registry.callback_action(payload)
        if action is not None:
            return ResolvedCallback(CallbackKind.REGISTERED, payload, action)
        return self.resolve_unregistered(payload)

    def resolve_unregistered(self, payload: str) -> ResolvedCallback:
        """Classify by payload shape alone, skipping the callback_actions table."""
        if payload.startswith(DYNAMIC_SENTINEL):
            return ResolvedCallback(CallbackKind.DYNAMIC, payload)

        parsed = self._parse_json_object(payload)
        if parsed is not None:
            return ResolvedCallback(CallbackKind.JSON, payload, parsed)

        return ResolvedCallback(CallbackKind.KEYBOARD, payload)

    @staticmethod
    def _parse_json_object(payload: str) -> Optional[CallbackAction]:
        try:
            raw = json.loads(payload)
        except ValueError:
            return None
        # Scalars and arrays fall through to the keyboard fallback
        if not isinstance(raw, dict):
            return None
        try:
            return CallbackAction.model_validate(raw)
        except ValidationError as e:
            logger.warning("callback_payload_invalid", payload=payload, error=str(e))
            return None

    @staticmethod
    def match_dynamic(flow: Flow, payload: str) -> Optional[tuple[DynamicCallbackStep, str]]:
        """First dynamic_callback step whose prefix matches, and the value after it."""
        for step in flow.steps:
            if not isinstance(step, DynamicCallbackStep):
                continue
            head = f"{step.prefix}_"
            if payload.startswith(head):
                return step, payload[len(head):]
        return None

    # ── Outbound ──────────────────────────────────────

    @staticmethod
    def build_callback_keyboard(step: CallbackStep) -> Keyboard:
        """One row of buttons; each payload is a compact JSON transition."""
        row = []
        for button in step.buttons:
            data = {
                "step_id": step.id,
                "value": button.value,
                "save_to_variable": button.save_to_variable,
                "next_step_id": button.next_step_id,
                "next_flow": button.next_flow,
            }
            payload = json.dumps({k: v for k, v in data.items() if v is not None},
                                 separators=(",", ":"), ensure_ascii=False)
            if len(payload.encode("utf-8")) > MAX_CALLBACK_BYTES:
                logger.warning("callback_data_too_long",
                               step_id=step.id, button=button.text,
                               size=len(payload.encode("utf-8")))
            row.append(KeyboardButton(text=button.text, payload=payload))
        return [row]

    @staticmethod
    def build_dynamic_keyboard(step: DynamicCallbackStep, menu: DynamicMenu) -> Keyboard:
        """One row of buttons with payloads "<prefix>_<value>", truncated to fit."""
        prefix = step.prefix
        row = []
        for button in menu.buttons:
            payload = f"{prefix}_{button.value}"
            if len(payload.encode("utf-8")) > MAX_CALLBACK_BYTES:
                room = MAX_CALLBACK_BYTES - len(prefix.encode("utf-8")) - 1
                truncated = f"{prefix}_{_truncate_utf8(str(button.value), room)}"
                logger.warning("callback_data_truncated",
                               step_id=step.id, original=payload, truncated=truncated)
                payload = truncated
            row.append(KeyboardButton(text=button.text, payload=payload))
        return [row]

    @staticmethod
    def parse_menu(result: Any) -> Optional[DynamicMenu]:
        """Validate a dynamic_callback handler result; None when it is unusable."""
        if isinstance(result, DynamicMenu):
            menu = result
        elif isinstance(result, dict):
            try:
                menu = DynamicMenu.model_validate(result)
            except ValidationError:
                return None
        else:
            return None
        if not menu.message:
            return None
        return menu

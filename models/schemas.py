"""
Core data models for the FlowBot engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

import structlog
from pydantic import BaseModel, Field, ValidationError, model_validator

from utils.conditions import get_nested_value

logger = structlog.get_logger()

# Step targets are either a step id or a literal index into the flow
StepTarget = Union[int, str]

# Engine-owned bookkeeping under data; not writable from callback payloads
SYSTEM_NAMESPACE = "_system"
WAIT_STATE_PATH = f"{SYSTEM_NAMESPACE}.waiting_for_input"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ValidationType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    EMAIL = "email"


class CallbackActionType(str, Enum):
    START_FLOW = "start_flow"
    GO_TO_STEP = "go_to_step"
    SET_VARIABLE = "set_variable"
    HANDLER = "handler"


# ──────────────────────────────────────────────────────────────
#  Wait-State: the armed WaitInput marker kept in context data
# ──────────────────────────────────────────────────────────────

class InputValidation(BaseModel):
    """How a WaitInput answer is checked before it is accepted."""
    type: str = ValidationType.TEXT.value          # unknown types always pass
    pattern: str = ""                              # optional extra regex
    error_message: str = ""


class WaitState(BaseModel):
    step_id: Optional[str] = None
    save_to_variable: str
    validation: Optional[InputValidation] = None
    next_step_id: Optional[StepTarget] = None


# ──────────────────────────────────────────────────────────────
#  User Context: one per external actor
# ──────────────────────────────────────────────────────────────

class StepHistoryEntry(BaseModel):
    flow: str
    step: int
    timestamp: str = Field(default_factory=_utcnow_iso)


class UserContext(BaseModel):
    """
    Persisted conversational state of one actor.

    The context is idle (current_flow == ""), running a flow directly
    (flow_mode and not flow_in_topic) or running a flow proxied into a
    forum topic (flow_in_topic). Contexts that break these rules are
    repaired on validation.
    """
    external_id: int
    human_id: int
    current_flow: str = ""
    current_step: int = 0
    data: dict[str, Any] = {}
    step_history: list[StepHistoryEntry] = []

    message_forwarding_enabled: bool = True
    flow_mode: bool = False

    flow_in_topic: bool = False
    topic_id: Optional[int] = None
    admin_chat_id: Optional[int] = None
    target_user_id: Optional[int] = None

    @model_validator(mode="after")
    def _repair_invariants(self) -> "UserContext":
        if self.flow_in_topic and not (
            self.flow_mode and self.topic_id is not None and self.admin_chat_id is not None
        ):
            logger.warning("context_invariant_repaired",
                           external_id=self.external_id,
                           rule="flow_in_topic",
                           flow_mode=self.flow_mode,
                           topic_id=self.topic_id,
                           admin_chat_id=self.admin_chat_id)
            self.flow_in_topic = False
        if not self.current_flow and self.current_step != 0:
            logger.warning("context_invariant_repaired",
                           external_id=self.external_id,
                           rule="idle_step",
                           current_step=self.current_step)
            self.current_step = 0
        return self

    @property
    def is_idle(self) -> bool:
        return not self.current_flow

    @property
    def wait_state(self) -> Optional[WaitState]:
        raw = get_nested_value(self.data, WAIT_STATE_PATH)
        if not raw:
            return None
        try:
            return WaitState.model_validate(raw)
        except ValidationError as e:
            # A corrupt marker counts as no wait-state; the next transition clears it
            logger.warning("wait_state_invalid", external_id=self.external_id,
                           error_count=e.error_count())
            return None


# ──────────────────────────────────────────────────────────────
#  Keyboards & callback actions: static configuration
# ──────────────────────────────────────────────────────────────

class KeyboardButton(BaseModel):
    """One inline button; payload is returned verbatim by the transport on press."""
    text: str
    payload: str


Keyboard = list[list[KeyboardButton]]


class CallbackAction(BaseModel):
    """
    Descriptor for a button press, either registered under a literal
    payload in configuration, or carried inside a JSON payload.
    """
    action: Optional[str] = None
    flow_name: Optional[str] = None                # start_flow
    next_step_id: Optional[StepTarget] = None      # go_to_step / chained transition
    next_flow: Optional[str] = None                # chained transition
    variable: Optional[str] = None                 # set_variable
    value: Any = None                              # set_variable / legacy save
    handler_name: Optional[str] = None             # handler
    save_to_variable: Optional[str] = None         # legacy button payloads
    step_id: Optional[str] = None                  # originating callback step


class BotCommand(BaseModel):
    """A slash command; starts a flow or invokes a registered handler."""
    name: str
    flow_name: Optional[str] = None
    handler_name: Optional[str] = None
    description: str = ""


# ──────────────────────────────────────────────────────────────
#  Dynamic callback menus: produced by custom handlers
# ──────────────────────────────────────────────────────────────

class DynamicButton(BaseModel):
    text: str
    value: Any


class DynamicMenu(BaseModel):
    message: str
    buttons: list[DynamicButton]

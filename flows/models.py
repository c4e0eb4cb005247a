"""
Flow Models — Declarative conversation flows.

A Flow is an ordered list of steps the engine walks through for one actor.
Steps either do their work and advance on their own (message without a
keyboard, condition, handler with next_step_id, forwarding_control, delay,
dynamic) or suspend the flow until the next inbound event (wait_input,
callback, message with a keyboard, dynamic_callback).

Jump targets (next_step_id, true_step, false_step) are a step id or a
literal index into the flow's step list.

Flows are loaded from YAML at startup:

    flows:
      - name: onboarding
        steps:
          - type: wait_input
            id: ask_name
            text: "Enter a name:"
            save_to_variable: human.name
            validation: {type: text}
            next_step_id: ask_email
"""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from models.schemas import InputValidation, StepTarget


# ──────────────────────────────────────────────────────────────
#  Step Types
# ──────────────────────────────────────────────────────────────

class StepType(str, Enum):
    """What kind of work a flow step does."""
    MESSAGE = "message"                       # Send text, optionally with a static keyboard
    WAIT_INPUT = "wait_input"                 # Prompt and capture the next freeform message
    CALLBACK = "callback"                     # Buttons whose payload carries the transition
    CONDITION = "condition"                   # Branch on an expression over the data bag
    HANDLER = "handler"                       # Call a registered custom handler
    FLOW = "flow"                             # Start another flow
    DELAY = "delay"                           # Sleep, then advance
    FORWARDING_CONTROL = "forwarding_control" # Toggle message forwarding
    DYNAMIC = "dynamic"                       # Handler produces the message text
    DYNAMIC_CALLBACK = "dynamic_callback"     # Handler produces a button menu


class _StepBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Step Definitions
# ──────────────────────────────────────────────────────────────

class MessageStep(_StepBase):
    type: Literal["message"] = "message"
    text: str
    keyboard_key: Optional[str] = None
    next_step_id: Optional[StepTarget] = None


class WaitInputStep(_StepBase):
    type: Literal["wait_input"] = "wait_input"
    text: str
    save_to_variable: str
    validation: Optional[InputValidation] = None
    next_step_id: Optional[StepTarget] = None


class CallbackButton(BaseModel):
    """A button whose press carries its own transition."""
    model_config = ConfigDict(frozen=True)

    text: str
    value: Any
    save_to_variable: Optional[str] = None
    next_step_id: Optional[StepTarget] = None
    next_flow: Optional[str] = None


class CallbackStep(_StepBase):
    type: Literal["callback"] = "callback"
    text: Optional[str] = None
    buttons: tuple[CallbackButton, ...]

    def prompt(self) -> str:
        """Explicit text, or the button labels joined as a question."""
        if self.text:
            return self.text
        return " or ".join(b.text for b in self.buttons) + "?"


class ConditionStep(_StepBase):
    type: Literal["condition"] = "condition"
    condition: str
    true_step: Optional[StepTarget] = None
    false_step: Optional[StepTarget] = None
    true_flow: Optional[str] = None           # a flow target wins over a step target
    false_flow: Optional[str] = None


class HandlerStep(_StepBase):
    type: Literal["handler"] = "handler"
    handler_name: str
    next_step_id: Optional[StepTarget] = None


class FlowStep(_StepBase):
    type: Literal["flow"] = "flow"
    flow_name: str


class DelayStep(_StepBase):
    type: Literal["delay"] = "delay"
    duration: int = Field(ge=0)               # milliseconds
    next_step_id: Optional[StepTarget] = None


class ForwardingControlStep(_StepBase):
    type: Literal["forwarding_control"] = "forwarding_control"
    action: Literal["enable", "disable"]
    next_step_id: Optional[StepTarget] = None


class DynamicStep(_StepBase):
    type: Literal["dynamic"] = "dynamic"
    handler: str
    keyboard_key: Optional[str] = None
    next_step_id: Optional[StepTarget] = None


class DynamicCallbackStep(_StepBase):
    type: Literal["dynamic_callback"] = "dynamic_callback"
    handler: str
    save_to_variable: str
    next_step_id: Optional[StepTarget] = None
    next_flow: Optional[str] = None
    callback_prefix: Optional[str] = None

    @property
    def prefix(self) -> str:
        """Payload prefix for this step's buttons (without the trailing '_')."""
        return self.callback_prefix or f"dc_{self.id}"


FlowStepDef = Annotated[
    Union[
        MessageStep, WaitInputStep, CallbackStep, ConditionStep, HandlerStep,
        FlowStep, DelayStep, ForwardingControlStep, DynamicStep, DynamicCallbackStep,
    ],
    Field(discriminator="type"),
]


# ──────────────────────────────────────────────────────────────
#  Flow: the complete definition
# ──────────────────────────────────────────────────────────────

class Flow(BaseModel):
    """A named, ordered list of steps. Immutable once the registry is frozen."""
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    steps: tuple[FlowStepDef, ...] = ()

    def find_step_index(self, step_id: str) -> Optional[int]:
        for i, step in enumerate(self.steps):
            if step.id == step_id:
                return i
        return None

    def resolve_target(self, target: StepTarget) -> Optional[int]:
        """Index for a step id or literal index; None when it does not resolve."""
        if isinstance(target, bool):
            return None
        if isinstance(target, int):
            return target if 0 <= target < len(self.steps) else None
        return self.find_step_index(target)

    def step_at(self, index: int):
        return self.steps[index] if 0 <= index < len(self.steps) else None

"""
Declarative Flow System.

Flows are ordered step lists loaded from YAML. The engine walks an actor
through them one inbound event at a time, persisting progress in the
actor's context between events:
  - Steps send messages, wait for input, branch, call handlers, start sub-flows
  - Buttons carry their transition in the callback payload
  - Flows can run in the actor's chat or inside an admin's forum topic
"""
from flows.models import (
    Flow, StepType, MessageStep, WaitInputStep, CallbackStep, CallbackButton,
    ConditionStep, HandlerStep, FlowStep, DelayStep, ForwardingControlStep,
    DynamicStep, DynamicCallbackStep,
)
from flows.results import StepResult, StepStatus
from flows.registry import FlowRegistry
from flows.handlers import HandlerRegistry, HandlerNotFound
from flows.callbacks import CallbackRouter, CallbackKind
from flows.engine import FlowEngine, validate_input

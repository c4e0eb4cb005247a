"""
Flow Registry — Loads, validates, and serves flows and their static configuration.

Holds four read-only tables, built once at startup and then frozen:
  - flows             name → Flow
  - keyboards         key → rows of KeyboardButton
  - callback_actions  literal payload → CallbackAction
  - commands          "/name" → BotCommand

Structural errors (missing or duplicate flow name, duplicate step id within a
flow) raise ValueError at load time. References that do not resolve (step
targets, flow names, keyboard keys, handler names) are logged as
flow_reference_unresolved and degrade at runtime.

Usage:
    registry = FlowRegistry.from_yaml("config/flows.yaml")
    registry.check_references(handlers)
    registry.freeze()
    flow = registry.get("onboarding")
"""
from __future__ import annotations

import structlog
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

import yaml

from flows.models import (
    CallbackStep, ConditionStep, DynamicCallbackStep, DynamicStep, Flow,
    FlowStep, HandlerStep, MessageStep,
)
from models.schemas import BotCommand, CallbackAction, Keyboard, KeyboardButton, StepTarget

logger = structlog.get_logger()


class FlowRegistry:
    """Central registry for flows, keyboards, callback actions and commands."""

    def __init__(self):
        self._flows: dict[str, Flow] = {}
        self._keyboards: dict[str, Keyboard] = {}
        self._callback_actions: dict[str, CallbackAction] = {}
        self._commands: dict[str, BotCommand] = {}
        self._frozen = False

    # ── Registration ──────────────────────────────────

    def _ensure_mutable(self):
        if self._frozen:
            raise RuntimeError("FlowRegistry is frozen; register everything before startup completes")

    def register(self, flow: Flow):
        """Register a single flow."""
        self._ensure_mutable()
        errors = self._validate(flow)
        if flow.name and flow.name in self._flows:
            errors.append(f"duplicate flow name '{flow.name}'")
        if errors:
            logger.error("invalid_flow", flow=flow.name, errors=errors)
            raise ValueError(f"Invalid flow '{flow.name}': {'; '.join(errors)}")

        self._flows[flow.name] = flow
        logger.info("flow_registered", flow=flow.name, steps=len(flow.steps))

    def register_keyboard(self, key: str, rows: list[list[Any]]):
        self._ensure_mutable()
        self._keyboards[key] = [
            [b if isinstance(b, KeyboardButton) else KeyboardButton(**b) for b in row]
            for row in rows
        ]

    def register_callback_action(self, payload: str, action: CallbackAction | dict[str, Any]):
        self._ensure_mutable()
        if isinstance(action, dict):
            action = CallbackAction(**action)
        self._callback_actions[payload] = action

    def register_command(self, command: BotCommand | dict[str, Any]):
        self._ensure_mutable()
        if isinstance(command, dict):
            command = BotCommand(**command)
        name = command.name if command.name.startswith("/") else f"/{command.name}"
        if not command.flow_name and not command.handler_name:
            raise ValueError(f"Command '{name}' needs a flow_name or a handler_name")
        self._commands[name] = command.model_copy(update={"name": name})

    def register_from_config(self, config: dict[str, Any]):
        """Load flows, keyboards, callback actions and commands from a YAML document."""
        config = config or {}
        for key, rows in (config.get("keyboards") or {}).items():
            self.register_keyboard(key, rows)
        for payload, action in (config.get("callback_actions") or {}).items():
            self.register_callback_action(payload, action)
        for command in config.get("commands") or []:
            self.register_command(command)
        for raw in config.get("flows") or []:
            self.register(self._parse_flow(raw))
        logger.info("flows_loaded",
                    flows=len(self._flows),
                    keyboards=len(self._keyboards),
                    callback_actions=len(self._callback_actions),
                    commands=len(self._commands))

    @classmethod
    def from_yaml(cls, path: str) -> "FlowRegistry":
        with open(Path(path)) as f:
            raw = yaml.safe_load(f) or {}
        registry = cls()
        registry.register_from_config(raw)
        return registry

    def freeze(self):
        """Make the registry read-only. Called once wiring is complete."""
        self._frozen = True
        logger.info("flow_registry_frozen", flows=sorted(self._flows))

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ── Lookup ────────────────────────────────────────

    def get(self, name: str) -> Optional[Flow]:
        return self._flows.get(name)

    def keyboard(self, key: str) -> Optional[Keyboard]:
        return self._keyboards.get(key)

    def callback_action(self, payload: str) -> Optional[CallbackAction]:
        return self._callback_actions.get(payload)

    def command(self, name: str) -> Optional[BotCommand]:
        return self._commands.get(name)

    @property
    def flows(self) -> Mapping[str, Flow]:
        return MappingProxyType(self._flows)

    @property
    def commands(self) -> Mapping[str, BotCommand]:
        return MappingProxyType(self._commands)

    # ── Validation ────────────────────────────────────

    @staticmethod
    def _validate(flow: Flow) -> list[str]:
        errors = []
        if not flow.name:
            errors.append("flow name is required")
        seen: set[str] = set()
        for step in flow.steps:
            if step.id is None:
                continue
            if step.id in seen:
                errors.append(f"duplicate step id '{step.id}'")
            seen.add(step.id)
        return errors

    def check_references(self, handler_names: Optional[set[str]] = None) -> list[str]:
        """
        Log every reference that does not resolve. Returns the messages.
        handler_names, when given, is checked against handler/dynamic steps
        and handler callback actions.
        """
        problems: list[str] = []

        def check_target(flow: Flow, where: str, target: Optional[StepTarget]):
            if target is not None and flow.resolve_target(target) is None:
                problems.append(f"{flow.name}.{where}: step target {target!r}")

        def check_flow(owner: str, name: Optional[str]):
            if name and name not in self._flows:
                problems.append(f"{owner}: flow {name!r}")

        def check_handler(owner: str, name: Optional[str]):
            if handler_names is not None and name and name not in handler_names:
                problems.append(f"{owner}: handler {name!r}")

        for flow in self._flows.values():
            for index, step in enumerate(flow.steps):
                where = step.id or str(index)
                for attr in ("next_step_id", "true_step", "false_step"):
                    check_target(flow, where, getattr(step, attr, None))
                for attr in ("flow_name", "next_flow", "true_flow", "false_flow"):
                    if isinstance(step, (FlowStep, ConditionStep, DynamicCallbackStep)):
                        check_flow(f"{flow.name}.{where}", getattr(step, attr, None))
                if isinstance(step, (MessageStep, DynamicStep)) and step.keyboard_key:
                    if step.keyboard_key not in self._keyboards:
                        problems.append(f"{flow.name}.{where}: keyboard {step.keyboard_key!r}")
                if isinstance(step, CallbackStep):
                    for button in step.buttons:
                        check_target(flow, where, button.next_step_id)
                        check_flow(f"{flow.name}.{where}", button.next_flow)
                if isinstance(step, HandlerStep):
                    check_handler(f"{flow.name}.{where}", step.handler_name)
                if isinstance(step, (DynamicStep, DynamicCallbackStep)):
                    check_handler(f"{flow.name}.{where}", step.handler)

        for payload, action in self._callback_actions.items():
            check_flow(f"callback_action {payload}", action.flow_name)
            check_flow(f"callback_action {payload}", action.next_flow)
            check_handler(f"callback_action {payload}", action.handler_name)

        for name, command in self._commands.items():
            check_flow(f"command {name}", command.flow_name)
            check_handler(f"command {name}", command.handler_name)

        for problem in problems:
            logger.warning("flow_reference_unresolved", reference=problem)
        return problems

    # ── Parsing ───────────────────────────────────────

    @staticmethod
    def _parse_flow(raw: dict[str, Any]) -> Flow:
        """Parse a raw dict (from YAML) into a Flow. Schema errors surface as ValueError."""
        if not isinstance(raw, dict) or not raw.get("name"):
            raise ValueError(f"Flow definition without a name: {raw!r}")
        return Flow.model_validate(raw)

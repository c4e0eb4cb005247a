"""
Flow Engine — Interprets flows against each actor's persisted context.

The engine is driven by inbound events. Each entry point loads the actor's
context, applies the event, runs any steps that advance on their own and
stops at the next step that waits (wait_input, callback, message with a
keyboard, dynamic_callback) or when the flow completes.

Architecture:
  UpdateRouter → FlowEngine.handle_incoming_message / handle_incoming_callback
    → UserContextManager (read-modify-write per change)
    → step executors → Transport.deliver(Destination, text, keyboard)
    → StepResult back to the caller

A flow runs either directly with the actor, or inside a forum topic where an
admin conducts it on a user's behalf (start_topic_flow). Every content step
computes one Destination from the context, so step executors never branch
on the mode themselves.

No entry point raises: failures are logged and reported as StepResult.failed.
"""
from __future__ import annotations

import asyncio
import functools
import math
import re
import structlog
from typing import Any, Awaitable, Callable, Optional

from channels.base import Destination, Transport
from context.manager import UserContextManager
from flows.callbacks import CallbackKind, CallbackRouter
from flows.handlers import HandlerNotFound, HandlerRegistry
from flows.models import (
    CallbackStep, ConditionStep, DelayStep, DynamicCallbackStep, DynamicStep,
    Flow, FlowStep, ForwardingControlStep, HandlerStep, MessageStep, WaitInputStep,
)
from flows.registry import FlowRegistry
from flows.results import StepResult
from models.schemas import (
    SYSTEM_NAMESPACE, WAIT_STATE_PATH, CallbackAction, CallbackActionType, InputValidation,
    StepTarget, UserContext, ValidationType, WaitState,
)
from utils.conditions import evaluate_expression, get_nested_value

logger = structlog.get_logger()

MAX_CHAIN_STEPS = 50  # prevent infinite loops in auto-advancing steps

DEFAULT_VALIDATION_ERROR = "Invalid input format"
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_CLEARED_TOPIC_FIELDS = {
    "flow_in_topic": False,
    "topic_id": None,
    "admin_chat_id": None,
    "target_user_id": None,
}


def _is_system_path(path: str) -> bool:
    return path.split(".", 1)[0] == SYSTEM_NAMESPACE


def validate_input(text: str, validation: InputValidation) -> bool:
    """Check a freeform answer against a wait_input validation rule."""
    kind = validation.type
    if kind == ValidationType.TEXT:
        ok = bool(text.strip())
    elif kind == ValidationType.NUMBER:
        try:
            ok = math.isfinite(float(text.strip()))
        except ValueError:
            ok = False
    elif kind == ValidationType.EMAIL:
        ok = bool(EMAIL_RE.match(text))
    else:
        ok = True  # unknown types pass

    if ok and validation.pattern:
        try:
            ok = re.fullmatch(validation.pattern, text) is not None
        except re.error as e:
            logger.warning("validation_pattern_invalid", pattern=validation.pattern, error=str(e))
    return ok


def guarded(fn):
    """Convert any exception escaping an entry point into StepResult.failed."""
    @functools.wraps(fn)
    async def wrapper(self, external_id, *args, **kwargs):
        try:
            return await fn(self, external_id, *args, **kwargs)
        except Exception as e:
            logger.error("flow_entry_point_failed",
                         entry_point=fn.__name__,
                         external_id=external_id,
                         error=str(e),
                         exc_info=True)
            return StepResult.failed(f"{type(e).__name__}: {e}")
    return wrapper


class _Chain:
    """Budget of step executions for one inbound event."""

    def __init__(self, limit: int):
        self.limit = limit
        self.executed = 0

    def spend(self) -> bool:
        self.executed += 1
        return self.executed <= self.limit


class FlowEngine:
    """
    Runs flows for actors.

    Usage:
        engine = FlowEngine(manager, transport, registry, handlers, admin_chat_id=-100123)
        await engine.start_flow(actor_id, "onboarding")
        await engine.handle_incoming_message(actor_id, "Ann")
        await engine.handle_incoming_callback(actor_id, "start_onboarding_button")
    """

    def __init__(
        self,
        manager: UserContextManager,
        transport: Transport,
        registry: FlowRegistry,
        handlers: HandlerRegistry,
        admin_chat_id: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        callback_router: Optional[CallbackRouter] = None,
        step_chain_limit: int = MAX_CHAIN_STEPS,
    ):
        """
        Args:
            manager: context access for every read and write
            transport: outbound sends
            registry: frozen flows, keyboards, callback actions
            handlers: custom handlers for handler/dynamic steps and callbacks
            admin_chat_id: default forum chat for topic flows
            sleep: async fn(seconds) used by delay steps
            callback_router: payload classifier (built from registry if omitted)
            step_chain_limit: max step executions per inbound event
        """
        self.manager = manager
        self.transport = transport
        self.registry = registry
        self.handlers = handlers
        self.admin_chat_id = admin_chat_id
        self._sleep = sleep
        self.callbacks = callback_router or CallbackRouter(registry)
        self.step_chain_limit = step_chain_limit

    def _chain(self) -> _Chain:
        return _Chain(self.step_chain_limit)

    # ══════════════════════════════════════════════════════════
    #  ENTRY POINTS
    # ══════════════════════════════════════════════════════════

    @guarded
    async def start_flow(self, external_id: int, flow_name: str) -> StepResult:
        return await self._start_flow(external_id, flow_name, self._chain())

    @guarded
    async def start_topic_flow(
        self,
        admin_id: int,
        topic_id: int,
        flow_name: str,
        target_user_id: Optional[int] = None,
        admin_chat_id: Optional[int] = None,
    ) -> StepResult:
        """Run a flow for an admin, with all output going to a forum topic."""
        flow = self.registry.get(flow_name)
        if flow is None:
            logger.error("flow_not_found", external_id=admin_id, flow=flow_name)
            return StepResult.failed("flow_not_found")

        context = await self.manager.get_context(admin_id)
        if context is None:
            logger.error("topic_flow_admin_context_missing", admin_id=admin_id, flow=flow_name)
            return StepResult.failed("admin_context_missing")

        # explicit argument > engine default > value remembered on the context
        chat_id = next(
            (c for c in (admin_chat_id, self.admin_chat_id, context.admin_chat_id) if c is not None),
            None,
        )
        if chat_id is None:
            logger.error("topic_flow_admin_chat_missing", admin_id=admin_id, flow=flow_name)
            return StepResult.failed("admin_chat_id_missing")

        await self.manager.update_context(
            admin_id,
            flow_mode=True,
            message_forwarding_enabled=False,
            current_flow=flow_name,
            current_step=0,
            flow_in_topic=True,
            topic_id=topic_id,
            admin_chat_id=chat_id,
            target_user_id=target_user_id,
        )
        if target_user_id is not None:
            await self.manager.set_variable(admin_id, "target_user_id", target_user_id)
        await self._clear_wait_state(admin_id, context)

        logger.info("topic_flow_started",
                    admin_id=admin_id, topic_id=topic_id, admin_chat_id=chat_id,
                    target_user_id=target_user_id, flow=flow_name, steps=len(flow.steps))
        return await self._enter_first_step(admin_id, flow, self._chain())

    @guarded
    async def go_to_step(self, external_id: int, target: StepTarget) -> StepResult:
        return await self._go_to(external_id, target, self._chain())

    @guarded
    async def complete_flow(self, external_id: int) -> StepResult:
        return await self._complete(external_id)

    @guarded
    async def execute_step(self, external_id: int, step) -> StepResult:
        """Execute a single step definition in the actor's current flow."""
        return await self._execute(external_id, step, self._chain())

    @guarded
    async def handle_incoming_message(self, external_id: int, text: str) -> StepResult:
        context = await self.manager.get_context(external_id)
        if context is None:
            return StepResult.ignored("no_context")
        return await self._consume_input(context, text)

    @guarded
    async def handle_topic_message(self, admin_id: int, text: str) -> StepResult:
        context = await self.manager.get_context(admin_id)
        if context is None or not context.flow_in_topic:
            logger.debug("topic_message_ignored", admin_id=admin_id)
            return StepResult.ignored("not_in_topic_flow")
        return await self._consume_input(context, text)

    @guarded
    async def handle_incoming_callback(self, external_id: int, payload: str) -> StepResult:
        return await self._dispatch_callback(external_id, payload)

    @guarded
    async def handle_topic_callback(self, admin_id: int, payload: str) -> StepResult:
        context = await self.manager.get_context(admin_id)
        if context is None or not context.flow_in_topic:
            logger.debug("topic_callback_ignored", admin_id=admin_id)
            return StepResult.ignored("not_in_topic_flow")
        return await self._dispatch_callback(admin_id, payload)

    # ══════════════════════════════════════════════════════════
    #  TRANSITIONS
    # ══════════════════════════════════════════════════════════

    async def _start_flow(self, external_id: int, flow_name: str, chain: _Chain) -> StepResult:
        flow = self.registry.get(flow_name)
        if flow is None:
            logger.error("flow_not_found", external_id=external_id, flow=flow_name)
            return StepResult.failed("flow_not_found")

        context = await self.manager.get_context(external_id)
        if context is None:
            logger.error("flow_start_context_missing", external_id=external_id, flow=flow_name)
            return StepResult.failed("no_context")

        await self.manager.update_context(
            external_id,
            flow_mode=True,
            message_forwarding_enabled=False,
            current_flow=flow_name,
            current_step=0,
            **_CLEARED_TOPIC_FIELDS,
        )
        await self._clear_wait_state(external_id, context)

        logger.info("flow_started", external_id=external_id, flow=flow_name, steps=len(flow.steps))
        return await self._enter_first_step(external_id, flow, chain)

    async def _enter_first_step(self, external_id: int, flow: Flow, chain: _Chain) -> StepResult:
        if not flow.steps:
            logger.warning("flow_has_no_steps", external_id=external_id, flow=flow.name)
            return StepResult.ignored("empty_flow")
        await self.manager.record_step(external_id, flow.name, 0)
        return await self._execute(external_id, flow.steps[0], chain)

    async def _go_to(self, external_id: int, target: StepTarget, chain: _Chain) -> StepResult:
        context = await self.manager.get_context(external_id)
        if context is None or context.is_idle:
            logger.error("no_active_flow", external_id=external_id, target=target)
            return StepResult.failed("no_active_flow")

        flow = self.registry.get(context.current_flow)
        if flow is None:
            logger.error("flow_not_found", external_id=external_id, flow=context.current_flow)
            return StepResult.failed("flow_not_found")

        index = flow.resolve_target(target)
        if index is None:
            logger.error("step_not_found", external_id=external_id, flow=flow.name, target=target)
            return StepResult.failed("step_not_found")

        logger.debug("step_entered", external_id=external_id, flow=flow.name,
                     step_index=index, step_id=flow.steps[index].id)
        await self.manager.record_step(external_id, flow.name, index)
        return await self._execute(external_id, flow.steps[index], chain)

    async def _complete(self, external_id: int) -> StepResult:
        context = await self.manager.get_context(external_id)
        if context is None:
            return StepResult.ignored("no_context")
        if context.is_idle and not context.flow_mode:
            return StepResult.ignored("no_active_flow")

        await self.manager.update_context(
            external_id,
            flow_mode=False,
            message_forwarding_enabled=True,
            current_flow="",
            current_step=0,
            **_CLEARED_TOPIC_FIELDS,
        )
        await self._clear_wait_state(external_id, context)
        logger.info("flow_completed", external_id=external_id, flow=context.current_flow)
        return StepResult.ok(flow=context.current_flow)

    async def _advance_or_complete(self, external_id: int, target: Optional[StepTarget],
                                   chain: _Chain) -> StepResult:
        if target is None or target == "":
            return await self._complete(external_id)
        return await self._go_to(external_id, target, chain)

    async def _follow(self, external_id: int, next_flow: Optional[str],
                      next_step_id: Optional[StepTarget], chain: _Chain) -> StepResult:
        """next_flow wins over next_step_id; neither means stay put."""
        if next_flow:
            return await self._start_flow(external_id, next_flow, chain)
        if next_step_id is not None and next_step_id != "":
            return await self._go_to(external_id, next_step_id, chain)
        return StepResult.ok()

    async def _clear_wait_state(self, external_id: int, context: UserContext):
        # Raw presence, so a marker that no longer validates is cleared too
        if get_nested_value(context.data, WAIT_STATE_PATH) is not None:
            await self.manager.set_variable(external_id, WAIT_STATE_PATH, None)

    # ══════════════════════════════════════════════════════════
    #  STEP EXECUTORS
    # ══════════════════════════════════════════════════════════

    async def _execute(self, external_id: int, step, chain: _Chain) -> StepResult:
        """Dispatch to the appropriate step executor."""
        if not chain.spend():
            logger.error("step_chain_limit_reached",
                         external_id=external_id, limit=chain.limit, step_id=step.id)
            return StepResult.failed("step_chain_limit")

        context = await self.manager.get_context(external_id)
        if context is None:
            return StepResult.failed("no_context")
        destination = Destination.for_context(context)
        logger.debug("step_executing", external_id=external_id,
                     flow=context.current_flow, step_id=step.id, step_type=step.type)

        if isinstance(step, MessageStep):
            return await self._exec_message(external_id, step, destination, chain)
        elif isinstance(step, WaitInputStep):
            return await self._exec_wait_input(external_id, step, destination)
        elif isinstance(step, CallbackStep):
            return await self._exec_callback(step, destination)
        elif isinstance(step, ConditionStep):
            return await self._exec_condition(external_id, step, context, chain)
        elif isinstance(step, HandlerStep):
            return await self._exec_handler(external_id, step, chain)
        elif isinstance(step, FlowStep):
            return await self._start_flow(external_id, step.flow_name, chain)
        elif isinstance(step, DelayStep):
            return await self._exec_delay(external_id, step, chain)
        elif isinstance(step, ForwardingControlStep):
            return await self._exec_forwarding_control(external_id, step, chain)
        elif isinstance(step, DynamicStep):
            return await self._exec_dynamic(external_id, step, destination, chain)
        elif isinstance(step, DynamicCallbackStep):
            return await self._exec_dynamic_callback(external_id, step, destination)
        logger.error("unknown_step_type", external_id=external_id, step=repr(step))
        return StepResult.failed("unknown_step_type")

    # ── MESSAGE ───────────────────────────────────────

    def _keyboard(self, key: Optional[str]):
        if not key:
            return None
        keyboard = self.registry.keyboard(key)
        if keyboard is None:
            logger.warning("keyboard_not_found", keyboard_key=key)
        return keyboard

    async def _exec_message(self, external_id: int, step: MessageStep,
                            destination: Destination, chain: _Chain) -> StepResult:
        keyboard = self._keyboard(step.keyboard_key)
        await self.transport.deliver(destination, step.text, keyboard)
        if keyboard:
            # The keyboard press drives the next transition
            return StepResult.ok()
        return await self._advance_or_complete(external_id, step.next_step_id, chain)

    # ── WAIT_INPUT ────────────────────────────────────

    async def _exec_wait_input(self, external_id: int, step: WaitInputStep,
                               destination: Destination) -> StepResult:
        wait = WaitState(
            step_id=step.id,
            save_to_variable=step.save_to_variable,
            validation=step.validation,
            next_step_id=step.next_step_id,
        )
        await self.manager.set_variable(external_id, WAIT_STATE_PATH, wait.model_dump(exclude_none=True))
        await self.transport.deliver(destination, step.text)
        return StepResult.ok()

    # ── CALLBACK ──────────────────────────────────────

    async def _exec_callback(self, step: CallbackStep, destination: Destination) -> StepResult:
        keyboard = self.callbacks.build_callback_keyboard(step)
        await self.transport.deliver(destination, step.prompt(), keyboard)
        return StepResult.ok()

    # ── CONDITION ─────────────────────────────────────

    async def _exec_condition(self, external_id: int, step: ConditionStep,
                              context: UserContext, chain: _Chain) -> StepResult:
        result = evaluate_expression(step.condition, context.data)
        logger.debug("condition_evaluated", external_id=external_id,
                     step_id=step.id, condition=step.condition, result=result)
        flow_target = step.true_flow if result else step.false_flow
        step_target = step.true_step if result else step.false_step
        if flow_target:
            return await self._start_flow(external_id, flow_target, chain)
        if step_target is not None:
            return await self._go_to(external_id, step_target, chain)
        logger.warning("condition_without_target", external_id=external_id,
                       step_id=step.id, result=result)
        return StepResult.ok()

    # ── HANDLER ───────────────────────────────────────

    async def _call_handler(self, external_id: int, name: str, payload: Any = None) -> None:
        """Invoke a handler whose failure must not stop the flow."""
        try:
            await self.handlers.invoke(name, external_id, self.manager, payload)
        except HandlerNotFound:
            logger.error("handler_not_found", external_id=external_id, handler=name)
        except Exception as e:
            logger.error("handler_failed", external_id=external_id, handler=name,
                         error=str(e), exc_info=True)

    async def _exec_handler(self, external_id: int, step: HandlerStep, chain: _Chain) -> StepResult:
        await self._call_handler(external_id, step.handler_name)
        if step.next_step_id is not None:
            return await self._go_to(external_id, step.next_step_id, chain)
        # The handler owns the transition
        return StepResult.ok()

    # ── DELAY ─────────────────────────────────────────

    async def _exec_delay(self, external_id: int, step: DelayStep, chain: _Chain) -> StepResult:
        await self._sleep(step.duration / 1000)
        if step.next_step_id is not None:
            return await self._go_to(external_id, step.next_step_id, chain)
        return StepResult.ok()

    # ── FORWARDING_CONTROL ────────────────────────────

    async def _exec_forwarding_control(self, external_id: int, step: ForwardingControlStep,
                                       chain: _Chain) -> StepResult:
        if step.action == "enable":
            await self.manager.enable_message_forwarding(external_id)
        else:
            await self.manager.disable_message_forwarding(external_id)
        if step.next_step_id is not None:
            return await self._go_to(external_id, step.next_step_id, chain)
        return StepResult.ok()

    # ── DYNAMIC ───────────────────────────────────────

    async def _exec_dynamic(self, external_id: int, step: DynamicStep,
                            destination: Destination, chain: _Chain) -> StepResult:
        if step.handler not in self.handlers:
            logger.error("handler_not_found", external_id=external_id, handler=step.handler)
            return await self._complete(external_id)
        try:
            text = await self.handlers.invoke(step.handler, external_id, self.manager)
            if isinstance(text, str) and text.strip():
                await self.transport.deliver(destination, text, self._keyboard(step.keyboard_key))
            else:
                logger.warning("dynamic_step_empty_result", external_id=external_id,
                               handler=step.handler, result_type=type(text).__name__)
        except Exception as e:
            logger.error("dynamic_step_failed", external_id=external_id,
                         handler=step.handler, error=str(e), exc_info=True)
        return await self._advance_or_complete(external_id, step.next_step_id, chain)

    # ── DYNAMIC_CALLBACK ──────────────────────────────

    async def _exec_dynamic_callback(self, external_id: int, step: DynamicCallbackStep,
                                     destination: Destination) -> StepResult:
        if step.handler not in self.handlers:
            logger.error("handler_not_found", external_id=external_id, handler=step.handler)
            return await self._complete(external_id)
        try:
            result = await self.handlers.invoke(step.handler, external_id, self.manager)
            menu = self.callbacks.parse_menu(result)
            if menu is None:
                logger.error("dynamic_callback_invalid_result", external_id=external_id,
                             handler=step.handler, result_type=type(result).__name__)
                return await self._complete(external_id)
            keyboard = self.callbacks.build_dynamic_keyboard(step, menu)
            await self.transport.deliver(destination, menu.message, keyboard)
        except Exception as e:
            logger.error("dynamic_callback_step_failed", external_id=external_id,
                         handler=step.handler, error=str(e), exc_info=True)
            return await self._complete(external_id)
        # Waits for the button press
        return StepResult.ok()

    # ══════════════════════════════════════════════════════════
    #  INBOUND EVENTS
    # ══════════════════════════════════════════════════════════

    async def _consume_input(self, context: UserContext, text: str) -> StepResult:
        external_id = context.external_id
        wait = context.wait_state
        if wait is None:
            logger.debug("message_ignored_not_waiting", external_id=external_id)
            return StepResult.ignored("not_waiting_for_input")

        if wait.validation and not validate_input(text, wait.validation):
            logger.info("input_validation_failed", external_id=external_id,
                        step_id=wait.step_id, validation=wait.validation.type)
            message = wait.validation.error_message or DEFAULT_VALIDATION_ERROR
            await self.transport.deliver(Destination.for_context(context), message)
            return StepResult.ignored("validation_failed")

        await self.manager.set_variable(external_id, wait.save_to_variable, text)
        await self.manager.set_variable(external_id, WAIT_STATE_PATH, None)
        logger.info("input_captured", external_id=external_id,
                    step_id=wait.step_id, variable=wait.save_to_variable)

        if wait.next_step_id is not None:
            return await self._go_to(external_id, wait.next_step_id, self._chain())
        return StepResult.ok()

    async def _dispatch_callback(self, external_id: int, payload: str) -> StepResult:
        resolved = self.callbacks.resolve(payload)
        logger.debug("callback_resolved", external_id=external_id,
                     payload=payload, kind=resolved.kind.value)
        chain = self._chain()

        if resolved.kind == CallbackKind.REGISTERED:
            result = await self._apply_registered(external_id, resolved.action, payload, chain)
            if result is not None:
                return result
            # Unknown action type: fall through to the payload-shape checks
            resolved = self.callbacks.resolve_unregistered(payload)

        if resolved.kind == CallbackKind.DYNAMIC:
            return await self._apply_dynamic(external_id, payload, chain)
        if resolved.kind == CallbackKind.JSON:
            return await self._apply_json(external_id, resolved.action, chain)
        return await self._apply_keyboard(external_id, payload, chain)

    async def _apply_registered(self, external_id: int, action: CallbackAction,
                                payload: str, chain: _Chain) -> Optional[StepResult]:
        kind = action.action
        if kind == CallbackActionType.START_FLOW:
            if not action.flow_name:
                logger.error("callback_action_incomplete", payload=payload, action=kind)
                return StepResult.failed("callback_action_incomplete")
            return await self._start_flow(external_id, action.flow_name, chain)

        if kind == CallbackActionType.GO_TO_STEP:
            if action.next_step_id is None:
                logger.error("callback_action_incomplete", payload=payload, action=kind)
                return StepResult.failed("callback_action_incomplete")
            return await self._go_to(external_id, action.next_step_id, chain)

        if kind == CallbackActionType.SET_VARIABLE:
            if action.variable and action.value is not None:
                await self.manager.set_variable(external_id, action.variable, action.value)
            return await self._follow(external_id, action.next_flow, action.next_step_id, chain)

        if kind == CallbackActionType.HANDLER:
            if action.handler_name:
                await self._call_handler(external_id, action.handler_name, payload)
            else:
                logger.error("callback_action_incomplete", payload=payload, action=kind)
            return await self._follow(external_id, action.next_flow, action.next_step_id, chain)

        logger.warning("callback_action_unknown", payload=payload, action=kind)
        return None

    async def _apply_json(self, external_id: int, action: CallbackAction, chain: _Chain) -> StepResult:
        kind = action.action
        target = action.variable if kind == CallbackActionType.SET_VARIABLE else action.save_to_variable
        if target and _is_system_path(target):
            logger.warning("callback_variable_rejected", external_id=external_id, variable=target)
            return StepResult.ignored("variable_not_writable")

        if kind == CallbackActionType.SET_VARIABLE:
            # an explicit null is a value; only an absent key is skipped
            if action.variable and "value" in action.model_fields_set:
                await self.manager.set_variable(external_id, action.variable, action.value)
            return await self._follow(external_id, action.next_flow, action.next_step_id, chain)

        if kind == CallbackActionType.START_FLOW:
            if not action.flow_name:
                return StepResult.ignored("callback_without_flow")
            return await self._start_flow(external_id, action.flow_name, chain)

        if kind == CallbackActionType.GO_TO_STEP:
            if action.next_step_id is None:
                return StepResult.ignored("callback_without_step")
            return await self._go_to(external_id, action.next_step_id, chain)

        # Button of a callback step: save the value, then move on
        if action.save_to_variable:
            await self.manager.set_variable(external_id, action.save_to_variable, action.value)
        return await self._follow(external_id, action.next_flow, action.next_step_id, chain)

    async def _apply_dynamic(self, external_id: int, payload: str, chain: _Chain) -> StepResult:
        context = await self.manager.get_context(external_id)
        if context is None or context.is_idle:
            logger.error("no_active_flow", external_id=external_id, payload=payload)
            return StepResult.failed("no_active_flow")
        flow = self.registry.get(context.current_flow)
        if flow is None:
            logger.error("flow_not_found", external_id=external_id, flow=context.current_flow)
            return StepResult.failed("flow_not_found")

        match = self.callbacks.match_dynamic(flow, payload)
        if match is None:
            logger.error("dynamic_callback_unmatched", external_id=external_id,
                         flow=flow.name, payload=payload)
            return StepResult.failed("dynamic_callback_unmatched")

        step, value = match
        await self.manager.set_variable(external_id, step.save_to_variable, value)
        logger.info("dynamic_callback_selected", external_id=external_id,
                    step_id=step.id, value=value)
        if step.next_flow:
            return await self._start_flow(external_id, step.next_flow, chain)
        return await self._advance_or_complete(external_id, step.next_step_id, chain)

    async def _apply_keyboard(self, external_id: int, payload: str, chain: _Chain) -> StepResult:
        context = await self.manager.get_context(external_id)
        if context is None or context.is_idle:
            return StepResult.ignored("no_active_flow")
        flow = self.registry.get(context.current_flow)
        step = flow.step_at(context.current_step) if flow else None
        if not isinstance(step, MessageStep) or not step.keyboard_key:
            logger.info("keyboard_callback_ignored", external_id=external_id,
                        flow=context.current_flow, step_index=context.current_step)
            return StepResult.ignored("no_keyboard_step")

        await self.manager.set_variable(external_id, f"keyboard.{payload}", payload)
        if step.next_step_id is not None:
            return await self._go_to(external_id, step.next_step_id, chain)
        return StepResult.ok()

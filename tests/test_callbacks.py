"""Tests for CallbackRouter payload classification and keyboard building."""
import json
import pytest
from structlog.testing import capture_logs

from flows.callbacks import MAX_CALLBACK_BYTES, CallbackKind, CallbackRouter
from flows.models import CallbackStep, DynamicCallbackStep, Flow
from flows.registry import FlowRegistry
from models.schemas import DynamicMenu


@pytest.fixture
def router():
    registry = FlowRegistry()
    registry.register_callback_action("help", {"action": "start_flow", "flow_name": "help"})
    registry.register_callback_action("dc_registered", {"action": "start_flow", "flow_name": "help"})
    registry.freeze()
    return CallbackRouter(registry)


class TestResolve:
    def test_registered_wins(self, router):
        resolved = router.resolve("help")
        assert resolved.kind == CallbackKind.REGISTERED
        assert resolved.action.flow_name == "help"

    def test_registered_wins_over_dynamic_prefix(self, router):
        assert router.resolve("dc_registered").kind == CallbackKind.REGISTERED

    def test_dynamic_sentinel(self, router):
        assert router.resolve("dc_select_2").kind == CallbackKind.DYNAMIC

    def test_json_object(self, router):
        resolved = router.resolve('{"action":"set_variable","variable":"a","value":1}')
        assert resolved.kind == CallbackKind.JSON
        assert resolved.action.variable == "a"

    @pytest.mark.parametrize("payload", ["unknown_payload_string", "[1, 2]", "42", '"text"', "{broken"])
    def test_everything_else_is_keyboard(self, router, payload):
        assert router.resolve(payload).kind == CallbackKind.KEYBOARD

    def test_invalid_json_object_is_keyboard(self, router):
        with capture_logs() as logs:
            resolved = router.resolve('{"variable": {"nested": 1}}')
        assert resolved.kind == CallbackKind.KEYBOARD
        assert logs[0]["event"] == "callback_payload_invalid"


class TestMatchDynamic:
    @pytest.fixture
    def flow(self):
        return Flow(name="f", steps=[
            DynamicCallbackStep(id="select", handler="h", save_to_variable="choice"),
            DynamicCallbackStep(id="city", handler="h", save_to_variable="city",
                                callback_prefix="dc_town"),
        ])

    def test_default_prefix(self, flow):
        step, value = CallbackRouter.match_dynamic(flow, "dc_select_2")
        assert step.id == "select"
        assert value == "2"

    def test_custom_prefix(self, flow):
        step, value = CallbackRouter.match_dynamic(flow, "dc_town_Paris_15")
        assert step.id == "city"
        assert value == "Paris_15"

    def test_no_match(self, flow):
        assert CallbackRouter.match_dynamic(flow, "dc_other_1") is None


class TestBuildKeyboards:
    def test_callback_keyboard_payloads(self):
        step = CallbackStep(id="drink", buttons=[
            {"text": "Tea", "value": "tea", "save_to_variable": "drink", "next_step_id": "thanks"},
            {"text": "Menu", "value": "m", "next_flow": "menu"},
        ])
        keyboard = CallbackRouter.build_callback_keyboard(step)
        assert len(keyboard) == 1
        first, second = keyboard[0]
        assert first.text == "Tea"
        assert json.loads(first.payload) == {
            "step_id": "drink", "value": "tea", "save_to_variable": "drink", "next_step_id": "thanks",
        }
        assert json.loads(second.payload) == {"step_id": "drink", "value": "m", "next_flow": "menu"}

    def test_long_callback_payload_is_logged(self):
        step = CallbackStep(id="s", buttons=[{"text": "x", "value": "v" * 80}])
        with capture_logs() as logs:
            CallbackRouter.build_callback_keyboard(step)
        assert logs[0]["event"] == "callback_data_too_long"

    def test_dynamic_keyboard_payloads(self):
        step = DynamicCallbackStep(id="select", handler="h", save_to_variable="v")
        menu = DynamicMenu(message="Pick", buttons=[{"text": "One", "value": "1"}, {"text": "Two", "value": "2"}])
        keyboard = CallbackRouter.build_dynamic_keyboard(step, menu)
        assert [b.payload for b in keyboard[0]] == ["dc_select_1", "dc_select_2"]

    def test_dynamic_payload_is_truncated(self):
        step = DynamicCallbackStep(id="select", handler="h", save_to_variable="v")
        menu = DynamicMenu(message="Pick", buttons=[{"text": "Long", "value": "é" * 60}])
        with capture_logs() as logs:
            keyboard = CallbackRouter.build_dynamic_keyboard(step, menu)
        payload = keyboard[0][0].payload
        assert payload.startswith("dc_select_")
        assert len(payload.encode("utf-8")) <= MAX_CALLBACK_BYTES
        assert logs[0]["event"] == "callback_data_truncated"


class TestParseMenu:
    def test_dict_result(self):
        menu = CallbackRouter.parse_menu({"message": "Pick", "buttons": [{"text": "A", "value": 1}]})
        assert menu.buttons[0].value == 1

    def test_empty_button_list_is_allowed(self):
        assert CallbackRouter.parse_menu({"message": "Nothing yet", "buttons": []}) is not None

    @pytest.mark.parametrize("result", [None, "text", {"buttons": []}, {"message": "", "buttons": []},
                                        {"message": "x", "buttons": [{"text": "no value"}]}])
    def test_unusable_results(self, result):
        assert CallbackRouter.parse_menu(result) is None

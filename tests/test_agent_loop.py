import base64
import io
import threading
import time

import pytest
from PIL import Image

from guiagent import agent as agent_mod
from guiagent.action_parser import parse_prediction
from guiagent.agent import AgentConfig, GUIAgent, build_system_prompt, decode_screenshot, get_summary
from guiagent.model import InvokeResult
from guiagent.models import (
    IMAGE_PLACEHOLDER,
    AbortedError,
    ErrorStatusEnum,
    ExecuteOutput,
    RetryConfig,
    RetryPolicy,
    ScreenshotOutput,
    StatusEnum,
)

CLICK = "Thought: Tap the button.\nAction: click(start_box='(500,500)')"
FINISHED = "Thought: All done.\nAction: finished()"


def _png_b64(width: int = 100, height: int = 200) -> str:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), "white").save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


class FakeOperator:
    def __init__(self, screenshots=None, on_execute=None):
        self.screenshots = list(screenshots or [])
        self.on_execute = on_execute
        self.executed = []

    def screenshot(self):
        b64 = self.screenshots.pop(0) if self.screenshots else _png_b64()
        return ScreenshotOutput(base64=b64, scale_factor=1.0)

    def execute(self, params):
        self.executed.append(params)
        if self.on_execute is not None:
            return self.on_execute(params)
        return None


class FakeModel:
    """Scripted model: each entry is a prediction string or an exception to raise."""

    model_name = "fake-model"
    factors = (1000, 1000)

    def __init__(self, script, repeat_last=False):
        self.script = list(script)
        self.repeat_last = repeat_last
        self.calls = []
        self.resets = 0

    def invoke(self, params):
        self.calls.append(params)
        if len(self.script) > 1 or not self.repeat_last:
            item = self.script.pop(0)
        else:
            item = self.script[0]
        if isinstance(item, BaseException):
            raise item
        parsed = parse_prediction(
            item, factors=self.factors, screen_context=params.screen_context
        )["parsed"]
        return InvokeResult(
            prediction=item, parsed_predictions=parsed, cost_time=10, cost_tokens=5, response_id="r1"
        )

    def reset(self):
        self.resets += 1


@pytest.fixture
def sleeps(monkeypatch):
    calls = []

    def fake_wait(signal, seconds):
        calls.append(seconds)
        return signal.is_set()

    monkeypatch.setattr(agent_mod, "_wait", fake_wait)
    return calls


def _agent(operator, model, **kwargs):
    data = []
    errors = []
    config = AgentConfig(
        operator=operator,
        model=model,
        on_data=data.append,
        on_error=lambda record, error: errors.append(error),
        **kwargs,
    )
    return GUIAgent(config), data, errors


def _action_types(operator):
    return [p.parsed_prediction.action_type for p in operator.executed]


def test_click_then_finished_ends_run(sleeps):
    operator = FakeOperator()
    model = FakeModel([CLICK, FINISHED])
    agent, data, errors = _agent(operator, model)

    record = agent.run("open the app")

    assert record.status == StatusEnum.END
    assert record.error is None
    assert errors == []
    assert _action_types(operator) == ["click", "finished"]
    click = operator.executed[0]
    assert (click.screen_width, click.screen_height) == (100, 200)
    assert click.factors == (1000, 1000)
    assert click.parsed_prediction.action_inputs["start_coords"] == (
        pytest.approx(50.0),
        pytest.approx(100.0),
    )
    assert model.resets == 1

    senders = [(t.sender, t.value) for t in record.conversations]
    assert senders[0] == ("human", "open the app")
    assert senders[1] == ("human", IMAGE_PLACEHOLDER)
    assert senders[2][0] == "agent"
    assert len(record.conversations) == 5


def test_on_data_gets_status_flips_and_one_turn_at_a_time(sleeps):
    agent, data, _ = _agent(FakeOperator(), FakeModel([FINISHED]))
    agent.run("task")

    assert data[0].status == StatusEnum.RUNNING
    assert data[0].conversations == []
    assert [len(d.conversations) for d in data[1:-1]] == [1, 1]
    assert data[-1].conversations == []
    assert data[-1].status == StatusEnum.END


def test_invoke_retries_then_records_invoke_error(sleeps):
    retried = []
    model = FakeModel([RuntimeError("model down")], repeat_last=True)
    agent, _, errors = _agent(
        FakeOperator(),
        model,
        retry=RetryConfig(model=RetryPolicy(max_retries=2, on_retry=lambda e, n: retried.append(n))),
    )

    record = agent.run("task")

    assert len(model.calls) == 3
    assert retried == [1, 2]
    assert sleeps == [30, 30]
    assert record.status == StatusEnum.ERROR
    assert record.error.type == ErrorStatusEnum.INVOKE_RETRY_ERROR
    assert record.error.message == "model down"
    assert len(errors) == 1
    assert errors[0].type == ErrorStatusEnum.INVOKE_RETRY_ERROR


def test_invoke_recovers_after_transient_failure(sleeps):
    model = FakeModel([RuntimeError("blip"), FINISHED])
    agent, _, errors = _agent(
        FakeOperator(), model, retry=RetryConfig(model=RetryPolicy(max_retries=1))
    )

    record = agent.run("task")

    assert record.status == StatusEnum.END
    assert record.error is None
    assert errors == []


def test_abort_from_model_is_not_retried(sleeps):
    model = FakeModel([AbortedError("Request was aborted")], repeat_last=True)
    operator = FakeOperator()
    agent, _, errors = _agent(operator, model, retry=RetryConfig(model=RetryPolicy(max_retries=3)))

    record = agent.run("task")

    assert len(model.calls) == 1
    assert record.status == StatusEnum.USER_STOPPED
    assert record.error is None
    assert errors == []
    assert _action_types(operator) == ["user_stop"]


def test_cancel_during_model_retry_delay_stops_at_once():
    cancel = threading.Event()
    model = FakeModel([RuntimeError("model down")], repeat_last=True)
    operator = FakeOperator()
    agent, _, errors = _agent(
        operator,
        model,
        signal=cancel,
        retry=RetryConfig(model=RetryPolicy(max_retries=3, on_retry=lambda e, n: cancel.set())),
    )

    started = time.monotonic()
    record = agent.run("task")

    assert time.monotonic() - started < agent_mod.MODEL_RETRY_DELAY / 2
    assert len(model.calls) == 1
    assert record.status == StatusEnum.USER_STOPPED
    assert record.error is None
    assert errors == []
    assert _action_types(operator) == ["user_stop"]


def test_cancel_during_execute_retry_is_not_an_execute_error(sleeps):
    cancel = threading.Event()

    def on_execute(params):
        if params.parsed_prediction.action_type == "click":
            cancel.set()
            raise RuntimeError("tap failed")

    operator = FakeOperator(on_execute=on_execute)
    agent, _, errors = _agent(
        operator,
        FakeModel([CLICK], repeat_last=True),
        signal=cancel,
        retry=RetryConfig(execute=RetryPolicy(max_retries=2)),
    )

    record = agent.run("task")

    assert sleeps == [agent_mod.EXECUTE_RETRY_DELAY]
    assert record.status == StatusEnum.USER_STOPPED
    assert record.error is None
    assert errors == []
    assert _action_types(operator) == ["click", "user_stop"]


def test_cancel_cuts_loop_interval_short():
    cancel = threading.Event()
    operator = FakeOperator(on_execute=lambda params: cancel.set())
    model = FakeModel([CLICK], repeat_last=True)
    agent, _, _ = _agent(operator, model, signal=cancel, loop_interval_ms=60_000)

    started = time.monotonic()
    record = agent.run("task")

    assert time.monotonic() - started < 30
    assert len(model.calls) == 1
    assert record.status == StatusEnum.USER_STOPPED


def test_user_stop_dispatch_failure_is_logged_not_raised(sleeps, capsys):
    cancel = threading.Event()
    cancel.set()

    def on_execute(params):
        raise RuntimeError("device gone")

    operator = FakeOperator(on_execute=on_execute)
    agent, data, errors = _agent(operator, FakeModel([CLICK]), signal=cancel)

    record = agent.run("task")

    assert record.status == StatusEnum.USER_STOPPED
    assert _action_types(operator) == ["user_stop"]
    assert data[-1].status == StatusEnum.USER_STOPPED
    assert errors == []
    assert "user_stop dispatch failed: device gone" in capsys.readouterr().err


def test_cancellation_mid_run_dispatches_user_stop(sleeps):
    cancel = threading.Event()

    def on_execute(params):
        if params.parsed_prediction.action_type == "click":
            cancel.set()

    operator = FakeOperator(on_execute=on_execute)
    agent, data, errors = _agent(operator, FakeModel([CLICK], repeat_last=True), signal=cancel)

    record = agent.run("task")

    assert record.status == StatusEnum.USER_STOPPED
    assert errors == []
    assert _action_types(operator) == ["click", "user_stop"]
    stop = operator.executed[-1]
    assert (stop.screen_width, stop.screen_height, stop.scale_factor) == (0, 0, 1)
    assert stop.factors == (0, 0)
    assert data[-1].status == StatusEnum.USER_STOPPED


def test_stop_method_ends_run_as_user_stopped(sleeps):
    holder = {}

    def on_execute(params):
        holder["agent"].stop()

    operator = FakeOperator(on_execute=on_execute)
    agent, _, _ = _agent(operator, FakeModel([CLICK], repeat_last=True))
    holder["agent"] = agent

    record = agent.run("task")

    assert record.status == StatusEnum.USER_STOPPED
    assert _action_types(operator) == ["click", "user_stop"]


def test_pause_stops_new_iterations(sleeps):
    holder = {}
    operator = FakeOperator(on_execute=lambda params: holder["agent"].pause())
    model = FakeModel([CLICK], repeat_last=True)
    agent, _, errors = _agent(operator, model)
    holder["agent"] = agent

    record = agent.run("task")

    assert record.status == StatusEnum.PAUSE
    assert len(model.calls) == 1
    assert errors == []


def test_invalid_screenshots_do_not_count_as_loops(sleeps):
    operator = FakeOperator(screenshots=["not-an-image", "", base64.b64encode(b"junk").decode()])
    model = FakeModel([CLICK], repeat_last=True)
    agent, _, errors = _agent(operator, model, max_loop_count=1)

    record = agent.run("task")

    assert model.calls == []
    assert sleeps == [1, 1, 1]
    assert record.status == StatusEnum.ERROR
    assert record.error.type == ErrorStatusEnum.SCREENSHOT_RETRY_ERROR
    assert errors[0].type == ErrorStatusEnum.SCREENSHOT_RETRY_ERROR


def test_invalid_screenshots_after_a_valid_turn_end_as_screenshot_error(sleeps):
    operator = FakeOperator(screenshots=[_png_b64(), "bad", "bad", "bad"])
    model = FakeModel([CLICK], repeat_last=True)
    agent, _, errors = _agent(operator, model, max_loop_count=2)

    record = agent.run("task")

    assert len(model.calls) == 1
    assert sleeps == [1, 1, 1]
    assert record.status == StatusEnum.ERROR
    assert record.error.type == ErrorStatusEnum.SCREENSHOT_RETRY_ERROR
    assert [e.type for e in errors] == [ErrorStatusEnum.SCREENSHOT_RETRY_ERROR]


def test_max_loop_count_ends_with_maxloop_error(sleeps):
    model = FakeModel([CLICK], repeat_last=True)
    agent, _, errors = _agent(FakeOperator(), model, max_loop_count=2)

    record = agent.run("task")

    assert len(model.calls) == 2
    assert record.status == StatusEnum.ERROR
    assert record.error.type == ErrorStatusEnum.REACH_MAXLOOP_ERROR
    assert len(errors) == 1


def test_model_never_sees_more_than_five_images(sleeps):
    model = FakeModel([CLICK], repeat_last=True)
    agent, _, _ = _agent(FakeOperator(), model, max_loop_count=8)

    agent.run("task")

    counts = [len(p.images) for p in model.calls]
    assert counts == [1, 2, 3, 4, 5, 5, 5, 5]
    last = model.calls[-1].messages
    assert sum(1 for m in last if m["role"] == "assistant") == 7


def test_error_env_sentinel_sets_environment_error(sleeps):
    operator = FakeOperator()
    agent, _, errors = _agent(operator, FakeModel(["Action: error_env()"]))

    record = agent.run("task")

    assert record.status == StatusEnum.ERROR
    assert record.error.type == ErrorStatusEnum.ENVIRONMENT_ERROR
    assert operator.executed == []
    assert len(errors) == 1


def test_max_loop_sentinel_sets_maxloop_error(sleeps):
    agent, _, _ = _agent(FakeOperator(), FakeModel(["Action: max_loop()"]))
    record = agent.run("task")
    assert record.error.type == ErrorStatusEnum.REACH_MAXLOOP_ERROR


def test_call_user_hands_back_without_error(sleeps):
    operator = FakeOperator()
    agent, _, errors = _agent(operator, FakeModel(["Thought: Need login.\nAction: call_user()"]))

    record = agent.run("task")

    assert record.status == StatusEnum.CALL_USER
    assert errors == []
    assert _action_types(operator) == ["call_user"]


def test_execute_failure_is_retried_then_recorded(sleeps):
    def on_execute(params):
        raise RuntimeError("tap failed")

    operator = FakeOperator(on_execute=on_execute)
    agent, _, errors = _agent(
        operator,
        FakeModel([CLICK], repeat_last=True),
        retry=RetryConfig(execute=RetryPolicy(max_retries=1)),
    )

    record = agent.run("task")

    assert _action_types(operator) == ["click", "click"]
    assert sleeps == [5]
    assert record.status == StatusEnum.ERROR
    assert record.error.type == ErrorStatusEnum.EXECUTE_RETRY_ERROR
    assert record.error.message == "tap failed"
    assert len(errors) == 1


def test_operator_status_is_adopted(sleeps):
    operator = FakeOperator(on_execute=lambda params: ExecuteOutput(status=StatusEnum.END))
    model = FakeModel([CLICK], repeat_last=True)
    agent, _, _ = _agent(operator, model)

    record = agent.run("task")

    assert record.status == StatusEnum.END
    assert len(model.calls) == 1


def test_empty_prediction_is_skipped(sleeps):
    model = FakeModel(["", FINISHED])
    agent, _, _ = _agent(FakeOperator(), model)

    record = agent.run("task")

    assert record.status == StatusEnum.END
    assert len(model.calls) == 2
    assert [t.sender for t in record.conversations] == ["human", "human", "human", "agent"]


def test_unparseable_prediction_keeps_looping(sleeps):
    model = FakeModel(["I have no idea", FINISHED])
    operator = FakeOperator()
    agent, _, _ = _agent(operator, model)

    record = agent.run("task")

    assert record.status == StatusEnum.END
    assert _action_types(operator) == ["finished"]


def test_screenshot_failure_after_retries_is_unknown_error(sleeps):
    class BrokenOperator(FakeOperator):
        def screenshot(self):
            raise OSError("device offline")

    agent, _, errors = _agent(
        BrokenOperator(), FakeModel([FINISHED]), retry=RetryConfig(screenshot=RetryPolicy(max_retries=1))
    )

    record = agent.run("task")

    assert sleeps == [5]
    assert record.status == StatusEnum.ERROR
    assert record.error.type == ErrorStatusEnum.UNKNOWN_ERROR
    assert errors[0].message == "device offline"


def test_loop_interval_sleeps_between_iterations(sleeps):
    agent, _, _ = _agent(FakeOperator(), FakeModel([CLICK, FINISHED]), loop_interval_ms=250)
    agent.run("task")
    assert sleeps == [0.25, 0.25]


def test_headers_and_previous_response_id_are_forwarded(sleeps):
    model = FakeModel([CLICK, FINISHED])
    agent, _, _ = _agent(FakeOperator(), model)

    agent.run("task", model_headers={"X-Trace": "abc"})

    assert model.calls[0].headers == {"X-Trace": "abc"}
    assert model.calls[0].previous_response_id is None
    assert model.calls[1].previous_response_id == "r1"


def test_system_prompt_lists_operator_action_spaces():
    class CustomOperator(FakeOperator):
        ACTION_SPACES = ["tap(start_box='')", "finished()"]

    prompt = build_system_prompt(CustomOperator())
    assert "tap(start_box='')\nfinished()" in prompt
    assert "## User Instruction" in prompt

    default = build_system_prompt(FakeOperator())
    assert "scroll(start_box='[x1, y1, x2, y2]'" in default


def test_explicit_system_prompt_wins():
    agent = GUIAgent(AgentConfig(operator=FakeOperator(), model=FakeModel([]), system_prompt="CUSTOM"))
    assert agent.system_prompt == "CUSTOM"


def test_summary_is_truncated():
    assert get_summary("x" * 10) == "x" * 10
    assert get_summary("y" * 250) == "y" * 200 + "..."


def test_decode_screenshot_accepts_data_url_prefix():
    assert decode_screenshot("data:image/png;base64," + _png_b64(30, 40)) == (30, 40, "image/png")
    assert decode_screenshot("") is None
    assert decode_screenshot("!!!") is None

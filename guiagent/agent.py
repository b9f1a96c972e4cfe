"""agent.py - Screenshot / predict / act loop for a vision-language GUI agent.

Give it an instruction and an operator; it captures the screen, asks the
model for the next step, executes the parsed actions, and loops until the
model says it is finished, asks for the user, errors out, or a bound is hit.
"""

import base64
import binascii
import io
import re
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from PIL import Image

from guiagent.messages import build_model_messages
from guiagent.model import InvokeParams, ModelAdapter, ModelConfig, UITarsModel, is_abort_error
from guiagent.models import (
    IMAGE_PLACEHOLDER,
    MAX_IMAGES,
    MAX_LOOP_COUNT,
    AbortedError,
    ActionType,
    ErrorStatusEnum,
    ExecuteParams,
    GUIAgentError,
    ModelVersion,
    Operator,
    ParsedAction,
    RetryConfig,
    RetryPolicy,
    RunRecord,
    ScreenshotContext,
    StatusEnum,
    Timing,
    Turn,
)
from guiagent.status import Event, EventKind, RunState, reduce

SCREENSHOT_RETRY_DELAY = 5
MODEL_RETRY_DELAY = 30
EXECUTE_RETRY_DELAY = 5
INVALID_SCREENSHOT_DELAY = 1
MAX_SNAPSHOT_ERR_CNT = 3
SUMMARY_LIMIT = 200

SYSTEM_PROMPT_TEMPLATE = """\
You are a GUI agent. You are given a task and your action history, with screenshots. You need to perform the next action to complete the task.

## Output Format
```
Thought: ...
Action: ...
```

## Action Space
{action_spaces}

## Note
- Write a small plan and finally summarize your next action (with its target element) in one sentence in `Thought` part.

## User Instruction
"""

DEFAULT_ACTION_SPACES = [
    "click(start_box='[x1, y1, x2, y2]')",
    "type(content='')",
    "scroll(start_box='[x1, y1, x2, y2]', direction='down or up or right or left')",
    "wait()",
    "finished()",
    "call_user()",
]

_DATA_URL_PREFIX = re.compile(r"^data:image/[^;]+;base64,")


def _log(msg: str) -> None:
    print(f"[agent] {msg}", file=sys.stderr)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _wait(signal: threading.Event, seconds: float) -> bool:
    """Sleep up to seconds; True when the signal was set before or during the wait."""
    return signal.wait(seconds)


@dataclass
class AgentConfig:
    operator: Operator
    model: ModelAdapter | ModelConfig
    system_prompt: str | None = None
    signal: threading.Event | None = None
    on_data: Callable[[RunRecord], None] | None = None
    on_error: Callable[[RunRecord, GUIAgentError], None] | None = None
    retry: RetryConfig = field(default_factory=RetryConfig)
    max_loop_count: int = MAX_LOOP_COUNT
    loop_interval_ms: int = 0
    model_version: str | ModelVersion | None = None


def build_system_prompt(operator: Operator) -> str:
    """System prompt listing the operator's ACTION_SPACES, or the default set."""
    action_spaces = getattr(type(operator), "ACTION_SPACES", None) or DEFAULT_ACTION_SPACES
    return SYSTEM_PROMPT_TEMPLATE.format(action_spaces="\n".join(action_spaces))


def get_summary(prediction: str) -> str:
    if len(prediction) > SUMMARY_LIMIT:
        return prediction[:SUMMARY_LIMIT] + "..."
    return prediction


def decode_screenshot(b64: str | None) -> tuple[int, int, str | None] | None:
    """Decode a base64 screenshot.

    Returns (width, height, mime), or None when the payload is not a
    usable image.
    """
    if not b64:
        return None
    try:
        raw = base64.b64decode(_DATA_URL_PREFIX.sub("", b64))
        with Image.open(io.BytesIO(raw)) as img:
            width, height = img.size
            mime = Image.MIME.get(img.format or "")
    except (OSError, ValueError, binascii.Error) as exc:
        _log(f"Screenshot decode failed: {exc}")
        return None
    if width <= 0 or height <= 0:
        return None
    return width, height, mime


class GUIAgent:
    """Drives one instruction to completion against an operator and a model."""

    def __init__(self, config: AgentConfig):
        self.config = config
        self.operator = config.operator
        if isinstance(config.model, ModelConfig):
            self.model: ModelAdapter = UITarsModel(config.model)
        else:
            self.model = config.model
        self.system_prompt = config.system_prompt or build_system_prompt(self.operator)
        self.signal = config.signal or threading.Event()
        self._stopped = False
        self._paused = False

    def stop(self) -> None:
        self._stopped = True
        self.signal.set()

    def pause(self) -> None:
        self._paused = True

    @property
    def cancelled(self) -> bool:
        return self._stopped or self.signal.is_set()

    # ------------------------------------------------------------------
    # Retry helper
    # ------------------------------------------------------------------

    def _retry(
        self,
        stage: str,
        fn: Callable,
        policy: RetryPolicy,
        delay: float,
        bail: Callable[[BaseException], bool] | None = None,
    ):
        """Call fn, retrying up to policy.max_retries times with a fixed delay."""
        attempts = max(0, policy.max_retries) + 1
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except Exception as exc:
                if bail is not None and bail(exc):
                    raise
                _log(f"{stage} failed ({attempt}/{attempts}): {exc}")
                if attempt >= attempts:
                    raise
                if policy.on_retry is not None:
                    policy.on_retry(exc, attempt)
                if _wait(self.signal, delay) or self.cancelled:
                    raise AbortedError(f"{stage} aborted") from exc
        raise RuntimeError(f"{stage} made no attempts")

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        instruction: str,
        history_messages: list[dict] | None = None,
        model_headers: dict[str, str] | None = None,
    ) -> RunRecord:
        """Run the loop for one instruction. Returns the final RunRecord."""
        cfg = self.config
        retry = cfg.retry
        now = _now_ms()
        record = RunRecord(
            system_prompt=self.system_prompt,
            instruction=instruction,
            model_name=self.model.model_name,
            log_time=now,
            conversations=[
                Turn(sender="human", value=instruction, timing=Timing(now, now, 0))
            ],
        )
        state = RunState()

        def apply(event: Event) -> None:
            nonlocal state
            state = reduce(state, event)
            record.status = state.status
            record.error = state.error

        def emit(turns: list[Turn]) -> None:
            if cfg.on_data is not None:
                cfg.on_data(record.snapshot(turns))

        _log(f"run: model={self.model.model_name}")
        _log(f"system prompt:\n{self.system_prompt}")

        loop_count = 0
        snapshot_err_count = 0
        total_tokens = 0
        total_time = 0
        previous_response_id: str | None = None

        apply(Event(EventKind.STARTED))
        emit([])

        try:
            while True:
                _log(f"loop_count: {loop_count}")

                if self.cancelled:
                    apply(Event(EventKind.CANCELLED))
                    break
                if self._paused:
                    apply(Event(EventKind.PAUSED))
                    break
                if state.status != StatusEnum.RUNNING:
                    break

                if snapshot_err_count >= MAX_SNAPSHOT_ERR_CNT:
                    apply(Event(EventKind.SCREENSHOT_EXHAUSTED))
                    break
                if loop_count >= cfg.max_loop_count:
                    apply(Event(EventKind.MAX_LOOP_REACHED))
                    break

                loop_count += 1
                start = _now_ms()

                snapshot = self._retry(
                    "screenshot", self.operator.screenshot, retry.screenshot, SCREENSHOT_RETRY_DELAY
                )
                decoded = decode_screenshot(getattr(snapshot, "base64", None))
                if decoded is None:
                    loop_count -= 1
                    snapshot_err_count += 1
                    _log(f"Invalid screenshot ({snapshot_err_count}/{MAX_SNAPSHOT_ERR_CNT})")
                    _wait(self.signal, INVALID_SCREENSHOT_DELAY)
                    continue

                width, height, mime = decoded
                scale_factor = snapshot.scale_factor or 1.0
                end = _now_ms()
                record.conversations.append(
                    Turn(
                        sender="human",
                        value=IMAGE_PLACEHOLDER,
                        timing=Timing(start, end, end - start),
                        screenshot_base64=snapshot.base64,
                        screenshot_context=ScreenshotContext(width, height, scale_factor, mime),
                    )
                )
                emit(record.conversations[-1:])

                messages, images = build_model_messages(
                    record.conversations, self.system_prompt, history_messages, MAX_IMAGES
                )
                params = InvokeParams(
                    messages=messages,
                    images=images,
                    screen_context={"width": width, "height": height},
                    scale_factor=scale_factor,
                    model_version=cfg.model_version,
                    headers=dict(model_headers or {}),
                    previous_response_id=previous_response_id,
                    signal=self.signal,
                )

                try:
                    result = self._retry(
                        "invoke",
                        lambda: self.model.invoke(params),
                        retry.model,
                        MODEL_RETRY_DELAY,
                        bail=is_abort_error,
                    )
                except Exception as exc:
                    if not is_abort_error(exc):
                        apply(Event(EventKind.INVOKE_FAILED, exc=exc))
                    raise

                if result.response_id:
                    previous_response_id = result.response_id
                total_tokens += result.cost_tokens or 0
                total_time += result.cost_time or 0

                _log(f"consumes: costTime={result.cost_time} costTokens={result.cost_tokens}")
                _log(f"Response: {result.prediction}")
                _log(f"Parsed: {[p.to_dict() for p in result.parsed_predictions]}")

                if not result.prediction:
                    _log("Response empty, continuing")
                    continue

                end = _now_ms()
                record.conversations.append(
                    Turn(
                        sender="agent",
                        value=get_summary(result.prediction),
                        timing=Timing(start, end, end - start),
                        screenshot_context=ScreenshotContext(width, height, scale_factor),
                        parsed_predictions=tuple(result.parsed_predictions),
                    )
                )
                emit(record.conversations[-1:])

                for parsed in result.parsed_predictions:
                    if self._handle_action(
                        parsed, result.prediction, width, height, scale_factor, apply
                    ):
                        break
                    if state.status != StatusEnum.RUNNING:
                        break

                if cfg.loop_interval_ms and cfg.loop_interval_ms > 0:
                    _wait(self.signal, cfg.loop_interval_ms / 1000)
        except Exception as exc:
            if is_abort_error(exc):
                _log("Request was aborted")
                apply(Event(EventKind.CANCELLED))
            else:
                _log(f"Caught error: {exc}")
                apply(Event(EventKind.UNEXPECTED_ERROR, exc=exc))
        finally:
            _log(f"Finally: status {record.status.value}")
            self.model.reset()

            if record.status == StatusEnum.USER_STOPPED:
                try:
                    self.operator.execute(
                        ExecuteParams(
                            prediction="",
                            parsed_prediction=ParsedAction(action_type=ActionType.USER_STOP.value),
                            screen_width=0,
                            screen_height=0,
                            scale_factor=1,
                            factors=(0, 0),
                        )
                    )
                except Exception as exc:
                    _log(f"user_stop dispatch failed: {exc}")

            emit([])

            if record.status == StatusEnum.ERROR and cfg.on_error is not None:
                error = record.error or GUIAgentError(
                    ErrorStatusEnum.UNKNOWN_ERROR, "Unknown error occurred"
                )
                cfg.on_error(record, error)

            _log(
                f">>> totalTokens: {total_tokens}, totalTime: {total_time}, "
                f"loopCnt: {loop_count} <<<"
            )
        return record

    def _handle_action(
        self,
        parsed: ParsedAction,
        prediction: str,
        width: int,
        height: int,
        scale_factor: float,
        apply: Callable[[Event], None],
    ) -> bool:
        """Process one parsed action. Returns True when the turn should stop."""
        action = ActionType.lookup(parsed.action_type)
        _log(f"Action: {parsed.action_type}")

        if action == ActionType.ERROR_ENV:
            apply(Event(EventKind.ENVIRONMENT_ERROR))
            return True
        if action == ActionType.MAX_LOOP:
            apply(Event(EventKind.MAX_LOOP_REACHED))
            return True

        if not self.cancelled:
            _log(f"Action inputs: {parsed.action_inputs}")
            params = ExecuteParams(
                prediction=prediction,
                parsed_prediction=parsed,
                screen_width=width,
                screen_height=height,
                scale_factor=scale_factor,
                factors=tuple(self.model.factors),
            )
            try:
                output = self._retry(
                    "execute",
                    lambda: self.operator.execute(params),
                    self.config.retry.execute,
                    EXECUTE_RETRY_DELAY,
                )
            except Exception as exc:
                if is_abort_error(exc):
                    raise
                _log(f"Execute error: {exc}")
                apply(Event(EventKind.EXECUTE_FAILED, exc=exc))
            else:
                status = getattr(output, "status", None) if output is not None else None
                if status is not None:
                    apply(Event(EventKind.OPERATOR_STATUS, status=StatusEnum(status)))

        if action == ActionType.CALL_USER:
            apply(Event(EventKind.CALL_USER))
            return True
        if action == ActionType.FINISHED:
            apply(Event(EventKind.FINISHED))
            return True
        return False

"""Shared data models for the GUI agent loop, parser, and operators."""

import traceback
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol


IMAGE_PLACEHOLDER = "<!-- IMAGE -->"
MAX_LOOP_COUNT = 25
MAX_IMAGES = 5
DEFAULT_FACTORS: tuple[int, int] = (1000, 1000)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class StatusEnum(str, Enum):
    INIT = "init"
    RUNNING = "running"
    END = "end"
    ERROR = "error"
    MAX_LOOP = "max_loop"
    USER_STOPPED = "user_stopped"
    PAUSE = "pause"
    CALL_USER = "call_user"


class ErrorStatusEnum(str, Enum):
    UNKNOWN_ERROR = "unknown_error"
    REACH_MAXLOOP_ERROR = "reach_maxloop_error"
    SCREENSHOT_RETRY_ERROR = "screenshot_retry_error"
    INVOKE_RETRY_ERROR = "invoke_retry_error"
    EXECUTE_RETRY_ERROR = "execute_retry_error"
    ENVIRONMENT_ERROR = "environment_error"
    MODEL_SERVICE_ERROR = "model_service_error"


class ModelVersion(str, Enum):
    V1_0 = "v1.0"
    V1_5 = "v1.5"


class ActionType(str, Enum):
    """Action types the loop itself reacts to."""

    FINISHED = "finished"
    CALL_USER = "call_user"
    ERROR_ENV = "error_env"
    MAX_LOOP = "max_loop"
    USER_STOP = "user_stop"

    @classmethod
    def lookup(cls, action_type: str) -> "ActionType | None":
        try:
            return cls(action_type)
        except ValueError:
            return None


class ShareVersion(str, Enum):
    V1 = "v1"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class GUIAgentError(Exception):
    """Terminal run error tagged with its taxonomy type."""

    def __init__(self, error_type: ErrorStatusEnum, message: str, details: str | None = None):
        super().__init__(message)
        self.type = error_type
        self.message = message
        self.details = details

    @classmethod
    def from_exception(cls, error_type: ErrorStatusEnum, exc: BaseException | None = None) -> "GUIAgentError":
        if exc is None:
            return cls(error_type, "Unknown error")
        details = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return cls(error_type, str(exc) or "Unknown error", details)

    def to_dict(self) -> dict:
        return {"type": self.type.value, "message": self.message, "details": self.details}


class AbortedError(Exception):
    """Raised when a run is cancelled while a stage is in flight."""


# ---------------------------------------------------------------------------
# Parsed actions and turns
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParsedAction:
    action_type: str
    action_inputs: dict[str, Any] = field(default_factory=dict)
    reflection: str | None = None
    thought: str = ""

    def to_dict(self) -> dict:
        return {
            "action_type": self.action_type,
            "action_inputs": dict(self.action_inputs),
            "reflection": self.reflection,
            "thought": self.thought,
        }


@dataclass(frozen=True)
class ScreenshotContext:
    width: int
    height: int
    scale_factor: float = 1.0
    mime: str | None = None


@dataclass(frozen=True)
class Timing:
    start: int
    end: int
    cost: int


@dataclass(frozen=True)
class Turn:
    """One recorded exchange: a human capture/instruction or an agent response."""

    sender: str  # "human" | "agent"
    value: str
    timing: Timing
    screenshot_base64: str | None = None
    screenshot_context: ScreenshotContext | None = None
    parsed_predictions: tuple[ParsedAction, ...] = ()

    @property
    def is_image(self) -> bool:
        return self.sender == "human" and bool(self.screenshot_base64)

    def to_dict(self, include_image: bool = True) -> dict:
        payload: dict[str, Any] = {
            "from": self.sender,
            "value": self.value,
            "timing": {"start": self.timing.start, "end": self.timing.end, "cost": self.timing.cost},
        }
        if self.screenshot_base64 and include_image:
            payload["screenshot_base64"] = self.screenshot_base64
        if self.screenshot_context is not None:
            ctx = self.screenshot_context
            payload["screenshot_context"] = {
                "size": {"width": ctx.width, "height": ctx.height},
                "mime": ctx.mime,
                "scale_factor": ctx.scale_factor,
            }
        if self.parsed_predictions:
            payload["prediction_parsed"] = [p.to_dict() for p in self.parsed_predictions]
        return payload


@dataclass
class RunRecord:
    """State of a single agent run. Owned and mutated by the agent loop only."""

    system_prompt: str
    instruction: str
    model_name: str
    log_time: int
    status: StatusEnum = StatusEnum.INIT
    conversations: list[Turn] = field(default_factory=list)
    error: GUIAgentError | None = None
    version: ShareVersion = ShareVersion.V1

    def snapshot(self, conversations: list[Turn] | None = None) -> "RunRecord":
        """Copy of the record carrying only the given turns."""
        return RunRecord(
            system_prompt=self.system_prompt,
            instruction=self.instruction,
            model_name=self.model_name,
            log_time=self.log_time,
            status=self.status,
            conversations=list(conversations or []),
            error=self.error,
            version=self.version,
        )

    def to_dict(self, include_images: bool = False) -> dict:
        return {
            "version": self.version.value,
            "system_prompt": self.system_prompt,
            "instruction": self.instruction,
            "model_name": self.model_name,
            "status": self.status.value,
            "log_time": self.log_time,
            "conversations": [t.to_dict(include_image=include_images) for t in self.conversations],
            "error": self.error.to_dict() if self.error else None,
        }


# ---------------------------------------------------------------------------
# Operator contract
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScreenshotOutput:
    base64: str
    scale_factor: float = 1.0


@dataclass(frozen=True)
class ExecuteParams:
    prediction: str
    parsed_prediction: ParsedAction
    screen_width: int
    screen_height: int
    scale_factor: float
    factors: tuple[int, int]


@dataclass(frozen=True)
class ExecuteOutput:
    status: StatusEnum | None = None


class Operator(Protocol):
    """Device-control collaborator driven by the agent loop."""

    def screenshot(self) -> ScreenshotOutput: ...

    def execute(self, params: ExecuteParams) -> ExecuteOutput | None: ...


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

RetryCallback = Callable[[BaseException, int], None]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 0
    on_retry: RetryCallback | None = None


@dataclass(frozen=True)
class RetryConfig:
    screenshot: RetryPolicy = field(default_factory=RetryPolicy)
    model: RetryPolicy = field(default_factory=RetryPolicy)
    execute: RetryPolicy = field(default_factory=RetryPolicy)

"""status.py - Run status transitions as a single reducer.

Every status change in a run goes through `reduce(state, event)`, so each
transition can be tested on its own and the loop never assigns status ad hoc.
"""

from dataclasses import dataclass, replace
from enum import Enum

from guiagent.models import ErrorStatusEnum, GUIAgentError, StatusEnum


class EventKind(str, Enum):
    STARTED = "started"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    MAX_LOOP_REACHED = "max_loop_reached"
    SCREENSHOT_EXHAUSTED = "screenshot_exhausted"
    INVOKE_FAILED = "invoke_failed"
    EXECUTE_FAILED = "execute_failed"
    ENVIRONMENT_ERROR = "environment_error"
    OPERATOR_STATUS = "operator_status"
    CALL_USER = "call_user"
    FINISHED = "finished"
    UNEXPECTED_ERROR = "unexpected_error"


@dataclass(frozen=True)
class RunState:
    status: StatusEnum = StatusEnum.INIT
    error: GUIAgentError | None = None


@dataclass(frozen=True)
class Event:
    kind: EventKind
    exc: BaseException | None = None
    status: StatusEnum | None = None
    message: str | None = None


_ERROR_TAGS = {
    EventKind.MAX_LOOP_REACHED: ErrorStatusEnum.REACH_MAXLOOP_ERROR,
    EventKind.SCREENSHOT_EXHAUSTED: ErrorStatusEnum.SCREENSHOT_RETRY_ERROR,
    EventKind.INVOKE_FAILED: ErrorStatusEnum.INVOKE_RETRY_ERROR,
    EventKind.EXECUTE_FAILED: ErrorStatusEnum.EXECUTE_RETRY_ERROR,
    EventKind.ENVIRONMENT_ERROR: ErrorStatusEnum.ENVIRONMENT_ERROR,
}

_DEFAULT_MESSAGES = {
    ErrorStatusEnum.REACH_MAXLOOP_ERROR: "Reached the maximum number of loops",
    ErrorStatusEnum.SCREENSHOT_RETRY_ERROR: "Too many invalid screenshots",
    ErrorStatusEnum.ENVIRONMENT_ERROR: "Environment error reported by the model",
}


def _error(tag: ErrorStatusEnum, event: Event) -> GUIAgentError:
    if event.exc is not None:
        return GUIAgentError.from_exception(tag, event.exc)
    return GUIAgentError(tag, event.message or _DEFAULT_MESSAGES.get(tag, "Unknown error"))


def reduce(state: RunState, event: Event) -> RunState:
    """Return the state that follows `event`."""
    kind = event.kind

    if kind == EventKind.STARTED:
        return RunState(status=StatusEnum.RUNNING)

    if kind == EventKind.CANCELLED:
        return RunState(status=StatusEnum.USER_STOPPED, error=state.error)

    if kind == EventKind.PAUSED:
        return replace(state, status=StatusEnum.PAUSE)

    if kind in _ERROR_TAGS:
        return RunState(status=StatusEnum.ERROR, error=_error(_ERROR_TAGS[kind], event))

    if kind == EventKind.UNEXPECTED_ERROR:
        # A stage that already recorded its own error keeps it.
        if state.status == StatusEnum.ERROR and state.error is not None:
            return state
        return RunState(
            status=StatusEnum.ERROR, error=_error(ErrorStatusEnum.UNKNOWN_ERROR, event)
        )

    if kind == EventKind.OPERATOR_STATUS:
        if event.status is None:
            return state
        return replace(state, status=event.status)

    if kind == EventKind.CALL_USER:
        return replace(state, status=StatusEnum.CALL_USER)

    if kind == EventKind.FINISHED:
        return replace(state, status=StatusEnum.END)

    raise ValueError(f"Unhandled run event: {kind}")

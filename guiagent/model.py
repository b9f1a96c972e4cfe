"""model.py - One round-trip to the vision-language model.

`UITarsModel` calls an OpenAI-compatible endpoint, then runs the raw text
through the action parser with the same screen context and scale factor it
was given. Transport errors propagate unchanged; the agent loop owns retries.
"""

import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from openai import OpenAI

from guiagent.action_parser import parse_prediction
from guiagent.models import DEFAULT_FACTORS, AbortedError, ModelVersion, ParsedAction

MAX_TOKENS = 2048
TEMPERATURE = 0.0
# Seconds; bounds how long an in-flight request can hold off cancellation.
REQUEST_TIMEOUT = 120


def _log(msg: str) -> None:
    print(f"[model] {msg}", file=sys.stderr)


@dataclass(frozen=True)
class ModelConfig:
    base_url: str
    api_key: str
    model: str
    use_responses_api: bool = False


@dataclass
class InvokeParams:
    messages: list[dict]
    images: list[str]
    screen_context: dict
    scale_factor: float = 1.0
    model_version: str | ModelVersion | None = None
    headers: dict[str, str] = field(default_factory=dict)
    previous_response_id: str | None = None
    signal: threading.Event | None = None


@dataclass
class InvokeResult:
    prediction: str
    parsed_predictions: list[ParsedAction]
    cost_time: int = 0
    cost_tokens: int = 0
    response_id: str | None = None


class ModelAdapter(Protocol):
    model_name: str
    factors: tuple[int, int]

    def invoke(self, params: InvokeParams) -> InvokeResult: ...

    def reset(self) -> None: ...


def is_abort_error(exc: BaseException) -> bool:
    """True for cancellation errors, which must not be retried."""
    if isinstance(exc, AbortedError):
        return True
    if type(exc).__name__.endswith("AbortError"):
        return True
    return "aborted" in str(exc).lower()


class UITarsModel:
    """ModelAdapter backed by the OpenAI Python SDK."""

    def __init__(
        self,
        config: ModelConfig,
        client: Any | None = None,
        factors: tuple[int, int] = DEFAULT_FACTORS,
    ) -> None:
        self.config = config
        self.model_name = config.model
        self.factors = tuple(factors)
        self._client = client
        self.calls = 0

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = OpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url or None,
                timeout=REQUEST_TIMEOUT,
            )
        return self._client

    def invoke(self, params: InvokeParams) -> InvokeResult:
        if params.signal is not None and params.signal.is_set():
            raise AbortedError("Request was aborted")

        start = time.monotonic()
        self.calls += 1
        if self.config.use_responses_api:
            prediction, tokens, response_id = self._call_responses(params)
        else:
            prediction, tokens, response_id = self._call_chat(params)
        cost_time = int((time.monotonic() - start) * 1000)

        parsed = parse_prediction(
            prediction,
            factors=self.factors,
            screen_context=params.screen_context,
            scale_factor=params.scale_factor,
            model_version=params.model_version,
        )["parsed"]

        return InvokeResult(
            prediction=prediction,
            parsed_predictions=parsed,
            cost_time=cost_time,
            cost_tokens=tokens,
            response_id=response_id,
        )

    def _call_chat(self, params: InvokeParams) -> tuple[str, int, str | None]:
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": params.messages,
            "max_tokens": MAX_TOKENS,
            "temperature": TEMPERATURE,
        }
        if params.headers:
            kwargs["extra_headers"] = dict(params.headers)
        response = self.client.chat.completions.create(**kwargs)

        prediction = ""
        choices = getattr(response, "choices", None) or []
        if choices:
            prediction = getattr(choices[0].message, "content", None) or ""
        usage = getattr(response, "usage", None)
        tokens = int(getattr(usage, "total_tokens", 0) or 0) if usage else 0
        return prediction, tokens, getattr(response, "id", None)

    def _call_responses(self, params: InvokeParams) -> tuple[str, int, str | None]:
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "input": to_responses_input(
                params.messages, incremental=bool(params.previous_response_id)
            ),
            "max_output_tokens": MAX_TOKENS,
            "temperature": TEMPERATURE,
        }
        if params.previous_response_id:
            kwargs["previous_response_id"] = params.previous_response_id
        if params.headers:
            kwargs["extra_headers"] = dict(params.headers)
        response = self.client.responses.create(**kwargs)

        prediction = getattr(response, "output_text", None) or ""
        usage = getattr(response, "usage", None)
        tokens = int(getattr(usage, "total_tokens", 0) or 0) if usage else 0
        return prediction, tokens, getattr(response, "id", None)

    def reset(self) -> None:
        _log(f"reset after {self.calls} call(s)")
        self.calls = 0


def to_responses_input(messages: list[dict], incremental: bool = False) -> list[dict]:
    """Convert chat-completion messages to Responses API input items.

    With `incremental`, the provider already holds everything up to the last
    assistant reply, so only the messages after it are sent.
    """
    if incremental:
        last_assistant = max(
            (i for i, m in enumerate(messages) if m.get("role") == "assistant"), default=-1
        )
        if last_assistant >= 0:
            messages = messages[last_assistant + 1 :]

    items = []
    for msg in messages:
        role = msg.get("role")
        content = msg.get("content")
        if isinstance(content, str):
            if role == "assistant":
                items.append({"role": "assistant", "content": content})
            else:
                items.append({"role": role, "content": [{"type": "input_text", "text": content}]})
            continue
        parts = []
        for part in content or []:
            if part.get("type") == "image_url":
                parts.append({"type": "input_image", "image_url": part["image_url"]["url"]})
            elif part.get("type") == "text":
                parts.append({"type": "input_text", "text": part.get("text", "")})
        items.append({"role": role, "content": parts})
    return items

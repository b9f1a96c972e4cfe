"""action_parser.py - Decode model "Thought / Action" text into structured actions.

The model answers with an optional preamble followed by one or more calls:

    Thought: The search box is at the top.
    Action: click(start_box='(512,86)')

    type(content='weather\\n')

Each call becomes one ParsedAction. Box-bearing inputs are normalized to a
[0,1] box string and, when the screen size is known, resolved to device
pixels under `start_coords` / `end_coords`. Nothing in here raises: text the
parser cannot make sense of yields an empty list.
"""

import json
import re
import sys

from guiagent.geometry import parse_box_to_screen_coords, smart_resize
from guiagent.models import DEFAULT_FACTORS, ModelVersion, ParsedAction

# Input keys that carry coordinates, mapped to the key they are stored under.
BOX_KEYS = {
    "start_box": "start_box",
    "end_box": "end_box",
    "point": "start_box",
    "start_point": "start_box",
    "end_point": "end_box",
}
COORD_KEYS = {"start_box": "start_coords", "end_box": "end_coords"}

_POINT_TAG = re.compile(r"<point>\s*(-?[\d.]+)\s+(-?[\d.]+)\s*</point>")
_BBOX_TAG = re.compile(r"<bbox>\s*(-?[\d.]+)\s+(-?[\d.]+)\s+(-?[\d.]+)\s+(-?[\d.]+)\s*</bbox>")
_BOX_TOKENS = re.compile(r"<\|box_start\|>|<\|box_end\|>")
_ACTION = re.compile(r"^[ \t]*Action:\s*(.*)", re.DOTALL | re.MULTILINE)
_REFLECTION = re.compile(r"Reflection:\s*(.+?)(?=Action_Summary:|Thought:|$)", re.DOTALL)
_SUMMARY = re.compile(r"Action_Summary:\s*(.+?)(?=Thought:|Reflection:|$)", re.DOTALL)
_THOUGHT = re.compile(r"Thought:\s*(.+?)(?=Reflection:|Action_Summary:|$)", re.DOTALL)
_EXTRA_ACTION_PREFIX = re.compile(r"\n\s*Action:\s*")
_CALL_BOUNDARY = re.compile(r"(?<=\))\s*\n\s*(?=[A-Za-z_][\w.]*\s*\()")
_CALL = re.compile(r"^\s*([A-Za-z_][\w.]*)\s*\((.*)\)\s*$", re.DOTALL)
_KEY = re.compile(r"\s*([A-Za-z_]\w*)\s*=\s*")
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?")
_CLOSERS = {"(": ")", "[": "]", "{": "}"}


def _log(msg: str) -> None:
    print(f"[parser] {msg}", file=sys.stderr)


def parse_prediction(
    prediction: str,
    factors: tuple[int, int] | list[int] = DEFAULT_FACTORS,
    screen_context: dict | None = None,
    scale_factor: float = 1.0,
    model_version: str | ModelVersion | None = None,
) -> dict:
    """Parse a raw model response.

    Returns {"parsed": [ParsedAction, ...]} in emission order.
    """
    try:
        return {
            "parsed": _parse(prediction, factors, screen_context, scale_factor, model_version)
        }
    except Exception as exc:
        _log(f"Could not parse prediction ({exc}); treating as no action")
        return {"parsed": []}


def _parse(prediction, factors, screen_context, scale_factor, model_version) -> list[ParsedAction]:
    text = _normalize_tags(str(prediction or "").strip())
    if not text:
        return []

    match = _ACTION.search(text)
    if match is None:
        _log("No 'Action:' found in prediction")
        return []

    thought, reflection = _parse_preamble(text[: match.start()])
    actions: list[ParsedAction] = []
    for call in split_actions(match.group(1)):
        parsed = parse_call(call)
        if parsed is None:
            _log(f"Skipping unparseable action: {call[:120]}")
            continue
        name, raw_inputs = parsed
        inputs = _resolve_inputs(raw_inputs, factors, screen_context, scale_factor, model_version)
        actions.append(
            ParsedAction(
                action_type=name,
                action_inputs=inputs,
                reflection=reflection,
                thought=thought,
            )
        )
    return actions


def _normalize_tags(text: str) -> str:
    text = _POINT_TAG.sub(r"(\1,\2)", text)
    text = _BBOX_TAG.sub(r"(\1,\2,\3,\4)", text)
    return _BOX_TOKENS.sub("", text)


def _parse_preamble(section: str) -> tuple[str, str | None]:
    """Return (thought, reflection) from the text before the 'Action:' line."""
    section = section.strip()
    reflection = None
    m = _REFLECTION.search(section)
    if m:
        reflection = m.group(1).strip() or None

    summary = None
    m = _SUMMARY.search(section)
    if m:
        summary = m.group(1).strip() or None

    m = _THOUGHT.search(section)
    if m:
        thought = m.group(1).strip()
    elif reflection is None and summary is None:
        # Bare text with no labels is the thought.
        thought = section
    else:
        thought = ""

    if summary:
        thought = f"{summary}\n{thought}".strip() if thought else summary
    return thought, reflection


def split_actions(action_part: str) -> list[str]:
    """Split the text after 'Action:' into individual call strings."""
    action_part = _EXTRA_ACTION_PREFIX.sub("\n\n", action_part.strip())
    calls = []
    for chunk in _CALL_BOUNDARY.split(action_part):
        chunk = chunk.strip()
        if not chunk:
            continue
        if "(" in chunk and not chunk.endswith(")"):
            chunk += ")"
        calls.append(chunk)
    return calls


def parse_call(call: str) -> tuple[str, dict[str, str]] | None:
    """Parse `name(key='value', ...)` into (name, {key: value})."""
    m = _CALL.match(call)
    if m is None:
        return None
    name = m.group(1).rsplit(".", 1)[-1]
    args = m.group(2)

    kwargs: dict[str, str] = {}
    pos = 0
    while pos < len(args):
        if args[pos] in ", \t\n":
            pos += 1
            continue
        key_match = _KEY.match(args, pos)
        if key_match is None:
            return None
        key = key_match.group(1)
        value, pos = _read_value(args, key_match.end())
        if value is None:
            return None
        kwargs[key] = value
    return name, kwargs


def _read_value(args: str, pos: int) -> tuple[str | None, int]:
    """Read one keyword value starting at `pos`. Returns (value, next_pos)."""
    if pos >= len(args):
        return "", pos
    opener = args[pos]

    if opener in "'\"":
        # Closing quote is the last one before the next `, key=` or the end,
        # so unescaped apostrophes inside typed text survive.
        closing = re.compile(re.escape(opener) + r"\s*(?=,\s*[A-Za-z_]\w*\s*=|$)")
        m = closing.search(args, pos + 1)
        if m is None:
            return None, len(args)
        raw = args[pos + 1 : m.start()]
        return raw.replace("\\" + opener, opener), m.end()

    if opener in _CLOSERS:
        depth = 0
        for i in range(pos, len(args)):
            if args[i] in _CLOSERS:
                depth += 1
            elif args[i] in _CLOSERS.values():
                depth -= 1
                if depth == 0:
                    return args[pos : i + 1], i + 1
        return None, len(args)

    end = args.find(",", pos)
    if end == -1:
        end = len(args)
    return args[pos:end].strip(), end


def _resolve_inputs(
    raw_inputs: dict[str, str],
    factors,
    screen_context: dict | None,
    scale_factor: float,
    model_version,
) -> dict:
    inputs: dict = {}
    for key, value in raw_inputs.items():
        key = key.strip()
        box_key = BOX_KEYS.get(key.lower())
        if box_key is None:
            if value == "" and key != "content":
                continue
            inputs[key] = value
            continue

        box = normalize_box(value, factors, screen_context, model_version)
        if box is None:
            _log(f"Could not read coordinates from {key}={value!r}")
            inputs[box_key] = value
            continue
        box_str = json.dumps(box)
        inputs[box_key] = box_str

        if screen_context and screen_context.get("width") and screen_context.get("height"):
            x, y = parse_box_to_screen_coords(
                _center_box(box), screen_context["width"], screen_context["height"]
            )
            if x is not None and y is not None:
                scale = scale_factor or 1.0
                inputs[COORD_KEYS[box_key]] = (x / scale, y / scale)
    return inputs


def normalize_box(
    value: str,
    factors=DEFAULT_FACTORS,
    screen_context: dict | None = None,
    model_version=None,
) -> list[float] | None:
    """Turn a model coordinate literal into a [0,1] box [x1, y1, x2, y2].

    v1.0 (default): numbers are divided by the factor pair.
    v1.5: numbers are pixels in the smart-resized image the model saw.
    """
    numbers = [float(n) for n in _NUMBER.findall(str(value))]
    if len(numbers) not in (2, 4):
        return None

    divisors = (float(factors[0]), float(factors[1]))
    version = model_version.value if isinstance(model_version, ModelVersion) else model_version
    if (
        version == ModelVersion.V1_5.value
        and screen_context
        and screen_context.get("width")
        and screen_context.get("height")
    ):
        resized_h, resized_w = smart_resize(
            int(screen_context["height"]), int(screen_context["width"])
        )
        divisors = (float(resized_w), float(resized_h))

    if not divisors[0] or not divisors[1]:
        return None
    box = [round(n / divisors[i % 2], 4) for i, n in enumerate(numbers)]
    if len(box) == 2:
        box = box * 2
    return box


def _center_box(box: list[float]) -> str:
    x1, y1, x2, y2 = box
    return json.dumps([(x1 + x2) / 2, (y1 + y2) / 2])

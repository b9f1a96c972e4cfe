"""adbwrap.py - Android device operator over the adb command line."""

import base64
import re
import shlex
import shutil
import subprocess
import sys
import time

from guiagent.models import ExecuteOutput, ExecuteParams, ScreenshotOutput

ADB_TIMEOUT = 30
LONG_PRESS_MS = 1000
SWIPE_MS = 300
WAIT_SECONDS = 5

# Android KeyEvent codes for the key names the model emits.
KEYCODES = {
    "home": 3,
    "back": 4,
    "up": 19,
    "down": 20,
    "left": 21,
    "right": 22,
    "volume_up": 24,
    "volume_down": 25,
    "power": 26,
    "tab": 61,
    "space": 62,
    "enter": 66,
    "return": 66,
    "backspace": 67,
    "delete": 67,
    "menu": 82,
    "escape": 111,
    "esc": 111,
    "app_switch": 187,
}

_SHELL_SPECIALS = re.compile(r"([\\\"'`$&|;<>()*?!#~\[\]{}])")


class AdbError(RuntimeError):
    """An adb command exited non-zero."""


def _log(msg: str) -> None:
    print(f"[adb] {msg}", file=sys.stderr)


def _adb_cmd() -> str:
    return shutil.which("adb") or "adb"


def _run(cmd: list[str], binary: bool = False) -> tuple[str | bytes, str, int]:
    """Run a subprocess command and return (stdout, stderr, returncode)."""
    _log(f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, capture_output=True, text=not binary, timeout=ADB_TIMEOUT)
    stderr = result.stderr.decode(errors="replace") if binary else result.stderr
    if result.returncode != 0:
        _log(f"stderr: {stderr.strip()}")
    return result.stdout, stderr, result.returncode


def list_devices() -> list[str]:
    """Return serials of attached devices in the `device` state."""
    stdout, stderr, rc = _run([_adb_cmd(), "devices"])
    if rc != 0:
        raise AdbError(f"adb devices failed: {stderr.strip()}")
    serials = []
    for line in stdout.splitlines()[1:]:
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "device":
            serials.append(parts[0])
    return serials


def get_device_id() -> str:
    """First attached device, or AdbError when none is connected."""
    devices = list_devices()
    if not devices:
        raise AdbError("No Android device found; check `adb devices`")
    _log(f"Using device {devices[0]}")
    return devices[0]


def escape_text(text: str) -> str:
    """Escape text for `adb shell input text`."""
    return _SHELL_SPECIALS.sub(r"\\\1", text).replace(" ", "%s")


def _point(value) -> tuple[int, int] | None:
    if not value:
        return None
    x, y = value
    return int(round(x)), int(round(y))


class AdbOperator:
    """Operator that captures and drives an Android device through adb."""

    ACTION_SPACES = [
        "click(start_box='[x1, y1, x2, y2]')",
        "long_press(start_box='[x1, y1, x2, y2]')",
        "type(content='') #If you want to submit your input, use \"\\n\" at the end of `content`.",
        "scroll(start_box='[x1, y1, x2, y2]', direction='down or up or right or left')",
        "drag(start_box='[x1, y1, x2, y2]', end_box='[x3, y3, x4, y4]')",
        "press_home()",
        "press_back()",
        "open_app(app_name='')",
        "wait() #Sleep for 5s and take a screenshot to check for any changes.",
        "finished()",
        "call_user() # Submit the task and call the user when the task is unsolvable, or when you need the user's help.",
    ]

    def __init__(self, device_id: str | None = None):
        self.device_id = device_id or get_device_id()
        self._size: tuple[int, int] | None = None

    def _adb(self, *args: str, binary: bool = False):
        cmd = [_adb_cmd(), "-s", self.device_id, *args]
        stdout, stderr, rc = _run(cmd, binary=binary)
        if rc != 0:
            raise AdbError(f"{' '.join(args)} failed: {stderr.strip()}")
        return stdout

    def _shell(self, *args: str) -> str:
        return self._adb("shell", *args)

    # ------------------------------------------------------------------
    # Operator contract
    # ------------------------------------------------------------------

    def screenshot(self) -> ScreenshotOutput:
        png = self._adb("exec-out", "screencap", "-p", binary=True)
        if not png:
            raise AdbError("screencap returned no data")
        _log(f"Captured screenshot ({len(png)} bytes)")
        return ScreenshotOutput(base64=base64.b64encode(png).decode("ascii"), scale_factor=1.0)

    def execute(self, params: ExecuteParams) -> ExecuteOutput | None:
        action = params.parsed_prediction
        inputs = action.action_inputs
        action_type = action.action_type
        start = _point(inputs.get("start_coords"))
        end = _point(inputs.get("end_coords"))

        if action_type in ("click", "left_single"):
            self.tap(*self._require(start, action_type))
        elif action_type == "left_double":
            x, y = self._require(start, action_type)
            self.tap(x, y)
            self.tap(x, y)
        elif action_type == "long_press":
            x, y = self._require(start, action_type)
            self.swipe(x, y, x, y, LONG_PRESS_MS)
        elif action_type == "type":
            self.type_text(inputs.get("content", ""))
        elif action_type == "scroll":
            self.scroll(inputs.get("direction", "down"), start, params.screen_width, params.screen_height)
        elif action_type in ("drag", "swipe", "select"):
            x1, y1 = self._require(start, action_type)
            x2, y2 = self._require(end, action_type)
            self.swipe(x1, y1, x2, y2, SWIPE_MS)
        elif action_type in ("hotkey", "press_key", "press"):
            self.key_press(inputs.get("key") or inputs.get("hotkey") or "")
        elif action_type == "press_back":
            self.key_press("back")
        elif action_type == "press_home":
            self.key_press("home")
        elif action_type == "open_app":
            self.open_app(inputs.get("app_name", ""))
        elif action_type == "wait":
            time.sleep(WAIT_SECONDS)
        elif action_type in ("finished", "call_user"):
            _log(f"{action_type}: nothing to execute")
        elif action_type == "user_stop":
            _log("Run stopped by user")
        else:
            _log(f"Unsupported action type: {action_type}")
        return ExecuteOutput()

    @staticmethod
    def _require(point, action_type: str) -> tuple[int, int]:
        if point is None:
            raise ValueError(f"{action_type} needs screen coordinates")
        return point

    # ------------------------------------------------------------------
    # Device primitives
    # ------------------------------------------------------------------

    def tap(self, x: int, y: int) -> None:
        self._shell("input", "tap", str(x), str(y))
        _log(f"Tapped ({x}, {y})")

    def swipe(self, x1: int, y1: int, x2: int, y2: int, duration_ms: int = SWIPE_MS) -> None:
        self._shell("input", "swipe", str(x1), str(y1), str(x2), str(y2), str(duration_ms))
        _log(f"Swiped ({x1}, {y1}) -> ({x2}, {y2}) in {duration_ms}ms")

    def type_text(self, content: str) -> None:
        """Type text; a trailing newline submits with ENTER."""
        submit = content.endswith("\n") or content.endswith("\\n")
        text = content.rstrip("\n")
        if text.endswith("\\n"):
            text = text[:-2]

        if text:
            if text.isascii():
                self._shell("input", "text", escape_text(text))
            else:
                # Non-ASCII goes through the ADBKeyboard IME broadcast. The device
                # shell re-parses the joined command line, so quote the message.
                self._shell(
                    "am", "broadcast", "-a", "ADB_INPUT_TEXT", "--es", "msg", shlex.quote(text)
                )
            _log(f"Typed text ({len(text)} chars)")
        if submit:
            self.key_press("enter")

    def key_press(self, key: str) -> None:
        name = key.strip().lower().replace(" ", "_")
        if name.startswith("keycode_"):
            self._shell("input", "keyevent", name.upper())
        elif name in KEYCODES:
            self._shell("input", "keyevent", str(KEYCODES[name]))
        else:
            raise ValueError(f"Unknown key: {key!r}")
        _log(f"Key press '{key}'")

    def screen_size(self) -> tuple[int, int]:
        """Physical screen size from `wm size`."""
        if self._size is None:
            out = self._shell("wm", "size")
            m = re.findall(r"(\d+)x(\d+)", out)
            if not m:
                raise AdbError(f"Could not read screen size from {out!r}")
            w, h = m[-1]
            self._size = (int(w), int(h))
        return self._size

    def scroll(
        self,
        direction: str,
        start: tuple[int, int] | None = None,
        screen_width: int = 0,
        screen_height: int = 0,
    ) -> None:
        """Scroll the content in `direction`; the finger moves the opposite way."""
        if not screen_width or not screen_height:
            screen_width, screen_height = self.screen_size()
        cx, cy = start or (screen_width // 2, screen_height // 2)
        dx = screen_width // 4
        dy = screen_height // 4
        swipe_map = {
            "down": (cx, cy, cx, cy - dy),
            "up": (cx, cy, cx, cy + dy),
            "right": (cx, cy, cx - dx, cy),
            "left": (cx, cy, cx + dx, cy),
        }
        coords = swipe_map.get(direction.strip().lower())
        if coords is None:
            raise ValueError(f"scroll: invalid direction '{direction}'")
        x1, y1, x2, y2 = coords
        self.swipe(max(0, x1), max(0, y1), max(0, x2), max(0, y2), SWIPE_MS)

    def open_app(self, package: str) -> None:
        if not package:
            raise ValueError("open_app needs an app_name")
        self._shell("monkey", "-p", package, "-c", "android.intent.category.LAUNCHER", "1")
        _log(f"Launched {package}")

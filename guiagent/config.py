"""config.py - Model and loop settings from config file, environment and flags.

Precedence, lowest to highest: gui-agent.config.json (or the file named by
GUI_AGENT_CONFIG_FILE), GUI_AGENT_* environment variables, CLI flags. A
remote YAML preset (--presets) takes the place of the config file.
"""

import json
import os
import sys
import urllib.error
import urllib.request
from dataclasses import asdict, dataclass, fields
from pathlib import Path

import yaml

from guiagent.models import MAX_LOOP_COUNT, RetryConfig, RetryPolicy

CONFIG_FILENAME = "gui-agent.config.json"
REQUIRED_FIELDS = ("base_url", "api_key", "model")

# Setting name -> environment variable.
ENV_VARS = {
    "base_url": "GUI_AGENT_BASE_URL",
    "api_key": "GUI_AGENT_API_KEY",
    "model": "GUI_AGENT_MODEL",
    "max_loop_count": "GUI_AGENT_MAX_LOOP",
    "loop_interval_ms": "GUI_AGENT_LOOP_INTERVAL_MS",
    "model_version": "GUI_AGENT_MODEL_VERSION",
    "system_prompt": "GUI_AGENT_SYSTEM_PROMPT",
    "device_id": "GUI_AGENT_DEVICE",
    "use_responses_api": "GUI_AGENT_USE_RESPONSES_API",
    "screenshot_retries": "GUI_AGENT_SCREENSHOT_RETRIES",
    "model_retries": "GUI_AGENT_MODEL_RETRIES",
    "execute_retries": "GUI_AGENT_EXECUTE_RETRIES",
}


class ConfigError(ValueError):
    """Settings are missing or malformed."""


def _log(msg: str) -> None:
    print(f"[config] {msg}", file=sys.stderr)


@dataclass
class AgentSettings:
    base_url: str = ""
    api_key: str = ""
    model: str = ""
    max_loop_count: int = MAX_LOOP_COUNT
    loop_interval_ms: int = 0
    model_version: str = ""
    system_prompt: str = ""
    device_id: str = ""
    use_responses_api: bool = False
    screenshot_retries: int = 0
    model_retries: int = 0
    execute_retries: int = 0

    def missing(self) -> list[str]:
        return [name for name in REQUIRED_FIELDS if not getattr(self, name)]

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            screenshot=RetryPolicy(max_retries=self.screenshot_retries),
            model=RetryPolicy(max_retries=self.model_retries),
            execute=RetryPolicy(max_retries=self.execute_retries),
        )


def config_path() -> Path:
    return Path(os.getenv("GUI_AGENT_CONFIG_FILE", "") or Path.cwd() / CONFIG_FILENAME)


def _coerce(name: str, value):
    """Convert a raw file/env/flag value to the field's type."""
    default = getattr(AgentSettings, name)
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int):
        try:
            number = int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{name} must be an integer, got {value!r}") from exc
        if number < 0:
            raise ConfigError(f"{name} must be >= 0, got {number}")
        return number
    return str(value).strip()


def load_file(path: Path | None = None) -> dict:
    """Settings from the JSON config file, or {} when it does not exist."""
    path = path or config_path()
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must hold a JSON object")
    _log(f"Loaded settings from {path}")
    return data


def load_env() -> dict:
    values = {}
    for name, var in ENV_VARS.items():
        raw = os.getenv(var, "").strip()
        if raw:
            values[name] = raw
    return values


# ---------------------------------------------------------------------------
# Remote presets
# ---------------------------------------------------------------------------

PRESET_TIMEOUT = 20

# Setting name -> preset keys, first non-empty wins.
PRESET_KEYS = {
    "api_key": ("vlmApiKey", "apiKey"),
    "base_url": ("vlmBaseUrl", "baseURL"),
    "model": ("vlmModelName", "model"),
}


def fetch_presets(url: str, timeout: int = PRESET_TIMEOUT) -> str:
    """GET the preset document. Raises ConfigError on any transport failure."""
    req = urllib.request.Request(url, method="GET")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read()
    except urllib.error.HTTPError as exc:
        raise ConfigError(f"Failed to fetch preset: {exc.code}") from exc
    except urllib.error.URLError as exc:
        raise ConfigError(f"Failed to fetch preset: {exc.reason}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to fetch preset: {exc}") from exc
    return raw.decode("utf-8", errors="replace") if raw else ""


def load_presets(url: str) -> dict:
    """Model settings from a YAML preset at url."""
    text = fetch_presets(url)
    try:
        preset = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Preset at {url} is not valid YAML: {exc}") from exc
    if not isinstance(preset, dict):
        raise ConfigError(f"Preset at {url} must hold a mapping")

    values = {}
    for name, keys in PRESET_KEYS.items():
        for key in keys:
            if preset.get(key):
                values[name] = preset[key]
                break
    _log(f"Loaded preset from {url} ({', '.join(sorted(values)) or 'no model settings'})")
    return values


def resolve(
    overrides: dict | None = None,
    path: Path | None = None,
    presets_url: str | None = None,
) -> AgentSettings:
    """Merge file, environment and explicit overrides (None values are ignored).

    A presets_url replaces the config file layer with the remote preset.
    """
    known = {f.name for f in fields(AgentSettings)}
    base = load_presets(presets_url) if presets_url else load_file(path)
    merged: dict = {}
    for layer in (base, load_env(), overrides or {}):
        for name, value in layer.items():
            if name in known and value is not None and value != "":
                merged[name] = _coerce(name, value)
    return AgentSettings(**merged)


def save_config(settings: AgentSettings, path: Path | None = None) -> Path:
    """Write the model settings back to the config file, keeping other keys."""
    path = path or config_path()
    existing = load_file(path)
    existing.update({name: getattr(settings, name) for name in REQUIRED_FIELDS})
    path.write_text(json.dumps(existing, indent=2) + "\n")
    _log(f"Saved settings to {path}")
    return path


def to_public_dict(settings: AgentSettings) -> dict:
    """Settings with the API key masked, for logging."""
    data = asdict(settings)
    if data.get("api_key"):
        data["api_key"] = data["api_key"][:4] + "***"
    return data

"""Run-record persistence: state.json plus an events.jsonl audit trail per run."""

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path

from guiagent.models import GUIAgentError, RunRecord

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_RUNS_ROOT = _PROJECT_ROOT / "_artifacts" / "runs"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _run_dir(run_id: str) -> Path:
    return _RUNS_ROOT / run_id


def _state_path(run_id: str) -> Path:
    return _run_dir(run_id) / "state.json"


def _events_path(run_id: str) -> Path:
    return _run_dir(run_id) / "events.jsonl"


def new_run_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    suffix = uuid.uuid4().hex[:8]
    return f"run_{stamp}_{suffix}"


def load_state(run_id: str) -> dict | None:
    """Load state.json for a run, returning None if absent/corrupt."""
    path = _state_path(run_id)
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError:
        return None


def save_state(state: dict) -> None:
    run_id = state["run_id"]
    _run_dir(run_id).mkdir(parents=True, exist_ok=True)
    state["updated_at"] = _now_iso()
    _state_path(run_id).write_text(json.dumps(state, indent=2))


def append_event(run_id: str, event: dict) -> None:
    """Append one event to events.jsonl."""
    _run_dir(run_id).mkdir(parents=True, exist_ok=True)
    payload = dict(event)
    payload.setdefault("timestamp", _now_iso())
    with _events_path(run_id).open("a") as f:
        f.write(json.dumps(payload) + "\n")


def list_runs(limit: int = 20) -> list[dict]:
    """Return recent run summaries sorted by created time descending."""
    if not _RUNS_ROOT.exists():
        return []

    items: list[dict] = []
    for entry in _RUNS_ROOT.iterdir():
        state = load_state(entry.name) if entry.is_dir() else None
        if state is None:
            continue
        items.append(
            {
                "run_id": state.get("run_id", entry.name),
                "instruction": state.get("instruction", ""),
                "status": state.get("status", "unknown"),
                "turns": len(state.get("conversations", [])),
                "created_at": state.get("created_at", ""),
                "updated_at": state.get("updated_at", ""),
            }
        )

    items.sort(key=lambda row: row.get("created_at", ""), reverse=True)
    return items[: max(1, limit)]


def run_paths(run_id: str) -> dict:
    return {
        "run_dir": str(_run_dir(run_id)),
        "state_path": str(_state_path(run_id)),
        "events_path": str(_events_path(run_id)),
    }


class RunRecorder:
    """Data sink for GUIAgent: pass `on_data` / `on_error` as the callbacks.

    The agent emits only new turns; the recorder accumulates them into
    state.json and logs one event per emission. Screenshot bytes are not
    written, only their capture context.
    """

    def __init__(self, run_id: str | None = None):
        self.run_id = run_id or new_run_id()
        self.state: dict = {}

    def _ensure_state(self) -> None:
        if not self.state:
            self.state = {
                "run_id": self.run_id,
                "created_at": _now_iso(),
                "completed_at": "",
                "conversations": [],
            }

    def on_data(self, record: RunRecord) -> None:
        payload = record.to_dict(include_images=False)
        turns = payload.pop("conversations")

        self._ensure_state()
        self.state.update(payload)
        self.state["conversations"].extend(turns)

        if record.status.value not in ("init", "running") and not turns:
            self.state["completed_at"] = _now_iso()
        save_state(self.state)

        if turns:
            for turn in turns:
                event = {"type": "turn", "from": turn["from"], "value": turn["value"]}
                if "prediction_parsed" in turn:
                    event["actions"] = [p["action_type"] for p in turn["prediction_parsed"]]
                append_event(self.run_id, event)
        else:
            append_event(self.run_id, {"type": "status", "status": record.status.value})

    def on_error(self, record: RunRecord, error: GUIAgentError) -> None:
        self._ensure_state()
        self.state["error"] = error.to_dict()
        save_state(self.state)
        append_event(
            self.run_id,
            {"type": "run_error", "error_type": error.type.value, "message": error.message},
        )

    def paths(self) -> dict:
        return run_paths(self.run_id)

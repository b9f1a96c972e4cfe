#!/usr/bin/env python3
"""GUI Agent Runner - drive an Android device with a vision-language model.

Usage:
    python main.py --query "Open Settings and turn on Wi-Fi"
    python main.py --base-url https://api.example.com/v1 --api-key sk-... --model ui-tars
    python main.py --presets https://example.com/ui-tars-preset.yaml --query "..."
    python main.py --list-runs
"""

import argparse
import json
import signal
import sys
import threading

from dotenv import load_dotenv

load_dotenv()

from guiagent import adbwrap, config, run_state
from guiagent.agent import AgentConfig, GUIAgent
from guiagent.model import ModelConfig
from guiagent.models import IMAGE_PLACEHOLDER, GUIAgentError, RunRecord, StatusEnum


def log(msg: str) -> None:
    print(f"[main] {msg}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="GUI Agent Runner - vision-language agent loop over adb"
    )
    parser.add_argument("--query", type=str, help="Instruction for the agent")
    parser.add_argument("--base-url", type=str, help="Model API base URL")
    parser.add_argument("--api-key", type=str, help="Model API key")
    parser.add_argument("--model", type=str, help="Model name")
    parser.add_argument(
        "--presets", type=str, help="URL of a YAML model preset (replaces the config file)"
    )
    parser.add_argument("--device", type=str, help="adb device serial (default: first attached)")
    parser.add_argument("--max-loop", type=int, help="Max loop iterations (default: 25)")
    parser.add_argument(
        "--model-version",
        choices=["v1.0", "v1.5"],
        help="Coordinate dialect of the model output (default: v1.0)",
    )
    parser.add_argument(
        "--list-runs",
        action="store_true",
        help="Print recent run summaries as JSON and exit",
    )
    return parser


def prompt_missing(settings: config.AgentSettings) -> bool:
    """Ask for missing model settings on stdin. Returns True if anything changed."""
    missing = settings.missing()
    if not missing:
        return False
    print("GUI Agent configuration", file=sys.stderr)
    print("Please provide the required model configuration:", file=sys.stderr)
    labels = {
        "base_url": "Model API Base URL",
        "api_key": "Model API Key",
        "model": "Model Name",
    }
    for name in missing:
        value = input(f"{labels[name]}: ").strip()
        if not value:
            raise config.ConfigError(f"{labels[name]} is required")
        setattr(settings, name, value)
    return True


def print_progress(record: RunRecord) -> None:
    """Echo each new turn the agent emits."""
    if not record.conversations:
        return
    last = record.conversations[-1]
    if last.sender == "agent":
        print(f"Agent: {last.value}", file=sys.stderr)
    elif last.is_image:
        print("Taking screenshot...", file=sys.stderr)
    elif last.value != IMAGE_PLACEHOLDER:
        print(f"User: {last.value}", file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.list_runs:
        print(json.dumps(run_state.list_runs(), indent=2))
        return 0

    try:
        settings = config.resolve(
            {
                "base_url": args.base_url,
                "api_key": args.api_key,
                "model": args.model,
                "device_id": args.device,
                "max_loop_count": args.max_loop,
                "model_version": args.model_version,
            },
            presets_url=args.presets,
        )
        if prompt_missing(settings):
            config.save_config(settings)
    except (config.ConfigError, EOFError) as exc:
        print(f"FATAL: {exc}", file=sys.stderr)
        return 1

    log(f"Settings: {config.to_public_dict(settings)}")

    log("Detecting Android devices...")
    try:
        operator = adbwrap.AdbOperator(settings.device_id or None)
    except adbwrap.AdbError as exc:
        print(f"FATAL: {exc}", file=sys.stderr)
        print("Check that the device is connected, USB debugging is on and adb is on PATH.", file=sys.stderr)
        return 1
    log(f"Using Android device: {operator.device_id}")

    instruction = args.query
    if not instruction:
        try:
            instruction = input("What would you like the agent to do? ").strip()
        except EOFError:
            instruction = ""
    if not instruction:
        print("FATAL: No instruction provided", file=sys.stderr)
        return 1

    cancel = threading.Event()

    def _on_sigint(signum, frame):
        print("\nStopping agent...", file=sys.stderr)
        cancel.set()

    signal.signal(signal.SIGINT, _on_sigint)

    recorder = run_state.RunRecorder()

    def on_data(record: RunRecord) -> None:
        print_progress(record)
        recorder.on_data(record)

    def on_error(record: RunRecord, error: GUIAgentError) -> None:
        print(f"Error: {error.type.value}: {error.message}", file=sys.stderr)
        recorder.on_error(record, error)

    agent = GUIAgent(
        AgentConfig(
            operator=operator,
            model=ModelConfig(
                base_url=settings.base_url,
                api_key=settings.api_key,
                model=settings.model,
                use_responses_api=settings.use_responses_api,
            ),
            system_prompt=settings.system_prompt or None,
            signal=cancel,
            on_data=on_data,
            on_error=on_error,
            retry=settings.retry_config(),
            max_loop_count=settings.max_loop_count,
            loop_interval_ms=settings.loop_interval_ms,
            model_version=settings.model_version or None,
        )
    )

    log(f"Task: {instruction}")
    record = agent.run(instruction)

    print(f"\n{'=' * 60}", file=sys.stderr)
    print(f"AGENT {record.status.value.upper()}", file=sys.stderr)
    if record.error is not None:
        print(f"Error: {record.error.type.value}: {record.error.message}", file=sys.stderr)
    print(f"Run artifacts: {recorder.paths()['run_dir']}", file=sys.stderr)
    print(f"{'=' * 60}", file=sys.stderr)
    return 0 if record.status == StatusEnum.END else 1


if __name__ == "__main__":
    sys.exit(main())

"""Local deterministic worker for supervisor and coordinator tests.

``--mode`` picks the behaviour; ``--modes a,b,c`` picks one per attempt number
(the last entry repeats), so a single command template can script a retry
sequence.
"""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import time
from datetime import UTC, datetime
from pathlib import Path

MODES = (
    "ok",
    "noop",
    "report_failure",
    "invalid_json",
    "invalid_schema",
    "dropped_action",
    "no_result",
    "crash",
    "silent",
    "chatty",
    "progress_dots",
    "ignore_term",
)


def main(argv: list[str] | None = None) -> int:
    """Run one scripted worker behaviour."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", default=os.getenv("AGENT_DISPATCH_PROMPT_FILE", ""))
    parser.add_argument("--output-dir", default=os.getenv("AGENT_DISPATCH_OUTPUT_DIR", "output"))
    parser.add_argument("--mode", choices=MODES, default="ok")
    parser.add_argument("--modes", default="")
    parser.add_argument("--sleep", type=float, default=5.0)
    parser.add_argument("--exit-code", type=int, default=3)
    parser.add_argument("--stderr", default="worker crashed: segmentation fault")
    args = parser.parse_args(argv)

    mode = _select_mode(args.mode, args.modes)
    if mode == "ignore_term":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    output_dir = Path(args.output_dir)
    result_path = output_dir / "result.json"
    resource_id = _resource_id()
    print(f"echo_agent mode={mode} resource={resource_id}", flush=True)

    if mode == "ok":
        _write_result(
            result_path,
            {
                "success": True,
                "actions": [_action(resource_id, "comment")],
                "analysis_summary": f"Handled {resource_id}",
            },
        )
        return 0
    if mode == "noop":
        _write_result(result_path, {"success": True, "actions": [], "analysis_summary": "noop"})
        return 0
    if mode == "report_failure":
        _write_result(
            result_path,
            {
                "success": False,
                "actions": [_action(resource_id, "comment")],
                "analysis_summary": "could not complete the task",
            },
        )
        return 0
    if mode == "invalid_json":
        result_path.parent.mkdir(parents=True, exist_ok=True)
        result_path.write_text("{not json", "utf-8")
        return 0
    if mode == "invalid_schema":
        _write_result(result_path, {"success": "yes", "actions": {}, "analysis_summary": 1})
        return 0
    if mode == "dropped_action":
        _write_result(
            result_path,
            {
                "success": True,
                "actions": [
                    _action(resource_id, "comment"),
                    {"type": "label", "target_resource_id": resource_id},
                    _action(resource_id, "label"),
                ],
                "analysis_summary": "two of three actions are well formed",
            },
        )
        return 0
    if mode == "no_result":
        return 0
    if mode == "crash":
        print(args.stderr, file=sys.stderr, flush=True)
        return args.exit_code
    if mode == "silent":
        time.sleep(args.sleep)
        return 0
    if mode == "chatty":
        deadline = time.monotonic() + args.sleep
        while time.monotonic() < deadline:
            print("working...", flush=True)
            time.sleep(0.1)
        return 0
    if mode == "progress_dots":
        deadline = time.monotonic() + args.sleep
        while time.monotonic() < deadline:
            sys.stdout.write(".")
            sys.stdout.flush()
            time.sleep(0.1)
        _write_result(
            result_path,
            {"success": True, "actions": [], "analysis_summary": "progress without newlines"},
        )
        return 0
    if mode == "ignore_term":
        time.sleep(args.sleep)
        return 0
    raise ValueError(f"Unknown mode: {mode}")


def _select_mode(mode: str, modes: str) -> str:
    scripted = [item.strip() for item in modes.split(",") if item.strip()]
    if not scripted:
        return mode
    attempt_no = int(os.getenv("AGENT_DISPATCH_ATTEMPT_NO", "1"))
    selected = scripted[min(attempt_no, len(scripted)) - 1]
    if selected not in MODES:
        raise ValueError(f"Unknown mode: {selected}")
    return selected


def _resource_id() -> str:
    context_dir = Path(os.getenv("AGENT_DISPATCH_CONTEXT_DIR", "context"))
    payload_path = context_dir / "resource_id.json"
    if payload_path.exists():
        value = json.loads(payload_path.read_text("utf-8"))
        if isinstance(value, str):
            return value
    return os.getenv("AGENT_DISPATCH_TASK_ID", "unknown")


def _action(resource_id: str, action_type: str) -> dict[str, object]:
    return {
        "type": action_type,
        "platform": "issue_tracker",
        "target_resource_id": resource_id,
        "timestamp": datetime.now(tz=UTC).isoformat(),
        "success": True,
    }


def _write_result(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

"""Local stream-json agent for CLI backend integration tests."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

FAKE_AGENT_VERSION = "fake-agent 1.0.0"


def _emit(payload: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


def main(argv: list[str] | None = None) -> int:
    """Emulate a coding CLI run in one of a few deterministic modes."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--version", action="store_true")
    parser.add_argument("--mode", default="ok", choices=("ok", "raw", "fail", "hang", "killed"))
    parser.add_argument("--create", action="append", default=[])
    parser.add_argument("--model", default="fake-model")
    parser.add_argument("prompt", nargs="?", default="")
    args = parser.parse_args(argv)

    if args.version:
        print(FAKE_AGENT_VERSION)
        return 0

    if args.mode == "raw":
        print("plain progress line")
        _emit({"type": "result", "result": "raw done", "usage": {"output_tokens": 1}})
        return 0

    if args.mode == "fail":
        sys.stderr.write("fatal: model not found\n")
        return 2

    if args.mode == "killed":
        return 137

    if args.mode == "hang":
        _emit({"type": "assistant", "message": {"content": [{"type": "text", "text": "working"}]}})
        time.sleep(3600)
        return 0

    _emit({"type": "assistant", "message": {"content": [{"type": "text", "text": args.prompt}]}})
    for name in args.create:
        _emit({"type": "tool_use", "tool": {"name": "Write", "input": {"path": name}}})
        Path(name).write_text(f"created by {args.model}\n", "utf-8")
        _emit({"type": "tool_result", "tool": {"name": "Write", "output": "ok"}})
    summary = f"Created {len(args.create)} files" if args.create else args.prompt
    _emit(
        {
            "type": "result",
            "result": summary,
            "total_cost_usd": 0.001,
            "usage": {"input_tokens": 12, "output_tokens": 7},
        },
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

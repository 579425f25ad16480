# run.py
# Entry point. Config and wiring only. No loop logic lives here.
#
# `ra "PROMPT"` behaves like a normal CLI: no submit tool, exit on the first
# assistant reply. `ra --prompt-file task.txt` runs in agent mode: submit is
# enabled and the loop continues until the model calls it.
# --exec / --no-submit override either default.

import argparse
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from ra_agent import display
from ra_agent.client import ChatClient
from ra_agent.events import BufferSink, EventEmitter, JsonlSink
from ra_agent.harness import Agent
from ra_agent.models import DEFAULT_BASE_URL, DEFAULT_MODEL, RunConfig
from ra_agent.prompt import load_task

_TRUTHY = {"1", "true", "yes", "on"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ra",
        description="Ra is a baseline ReAct CLI agent for OpenRouter-compatible models.",
    )
    parser.add_argument("prompt", nargs="?", metavar="PROMPT", help="Prompt text (quote for spaces).")
    parser.add_argument("--prompt-file", type=Path, metavar="FILE", help="Read the prompt from a file.")
    parser.add_argument(
        "--model",
        default=os.getenv("RA_DEFAULT_MODEL", DEFAULT_MODEL),
        help="Model ID to use (OpenRouter format).",
    )
    parser.add_argument(
        "--cwd", type=Path, default=Path("."), metavar="DIR", help="Working directory for file and shell tools."
    )
    parser.add_argument("--api-key", help="OpenRouter API key (overrides OPENROUTER_API_KEY).")
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL, help="OpenRouter API base URL.")
    parser.add_argument("--temperature", type=float, help="Sampling temperature (omit to use provider default).")
    parser.add_argument("--top-p", type=float, help="Nucleus sampling (omit to use provider default).")
    parser.add_argument("--max-steps", type=int, help="Maximum number of steps before terminating.")
    parser.add_argument("--time-limit-sec", type=float, help="Time limit in seconds before terminating.")
    parser.add_argument("--max-tool-output-chars", type=int, help="Maximum tool output characters to retain.")

    log = parser.add_mutually_exclusive_group()
    log.add_argument("--log-dir", type=Path, metavar="DIR", help="Directory to write the JSONL log file.")
    log.add_argument("--log-path", type=Path, metavar="FILE", help="Path to write the JSONL log file.")

    output = parser.add_mutually_exclusive_group()
    output.add_argument(
        "--json",
        action="store_true",
        help="Print the JSONL event stream to stdout after completion (suppresses plain output).",
    )
    output.add_argument(
        "--stream-json",
        action="store_true",
        help="Stream the JSONL event stream to stdout as events occur (suppresses plain output).",
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--exec",
        action="store_true",
        help="Force agent mode (enable submit and continue until submit is called).",
    )
    mode.add_argument(
        "--no-submit",
        action="store_true",
        help="Disable submit and stop on the first assistant response without tool calls.",
    )

    parser.add_argument(
        "--enable-search",
        "--search",
        dest="web_search",
        action="store_true",
        default=os.getenv("RA_WEB_SEARCH", "").lower() in _TRUTHY,
        help="Enable web tools (off by default): web_search, web_open, web_find.",
    )
    parser.add_argument("--quiet", action="store_true", help="Do not render progress on stderr.")
    return parser


def _default_log_path(log_dir: Path, session_id: str) -> Path:
    # Unique per run so logs never overwrite each other.
    stamp = datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    return log_dir / f"ra-{stamp.replace(':', '-')}-{session_id}.jsonl"


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    argv = sys.argv[1:] if argv is None else argv
    parser = build_parser()
    if not argv or argv == ["help"]:
        parser.print_help()
        return 0

    args = parser.parse_args(argv)
    if (args.prompt is None) == (args.prompt_file is None):
        parser.error("exactly one of PROMPT or --prompt-file is required")
    api_key = args.api_key or os.getenv("OPENROUTER_API_KEY")
    if not api_key:
        parser.error("missing API key: set --api-key or OPENROUTER_API_KEY")
    try:
        cwd = args.cwd.resolve(strict=True)
    except OSError as exc:
        parser.error(f"failed to resolve cwd {args.cwd}: {exc}")
    if not cwd.is_dir():
        parser.error(f"cwd is not a directory: {cwd}")

    if args.exec:
        submit_enabled = True
    elif args.no_submit:
        submit_enabled = False
    else:
        submit_enabled = args.prompt_file is not None

    try:
        task = load_task(args.prompt, args.prompt_file)
    except OSError as exc:
        parser.error(f"failed to read prompt file {args.prompt_file}: {exc}")

    overrides = {}
    if args.max_tool_output_chars is not None:
        overrides["max_tool_output_chars"] = args.max_tool_output_chars
    try:
        config = RunConfig(
            model=args.model,
            base_url=args.base_url,
            cwd=cwd,
            submit_enabled=submit_enabled,
            web_enabled=args.web_search,
            max_steps=args.max_steps,
            time_limit_sec=args.time_limit_sec,
            temperature=args.temperature,
            top_p=args.top_p,
            **overrides,
        )
    except ValidationError as exc:
        first = exc.errors()[0]
        flag = str(first["loc"][0]).replace("_", "-")
        parser.error(f"invalid value for --{flag}: {first['msg']}")

    session_id = str(uuid.uuid4())
    if args.log_path is not None:
        log_path = args.log_path if args.log_path.is_absolute() else cwd / args.log_path
    else:
        log_dir = args.log_dir if args.log_dir is not None else cwd
        log_path = _default_log_path(log_dir if log_dir.is_absolute() else cwd / log_dir, session_id)
    try:
        log_sink = JsonlSink.open(log_path)
    except OSError as exc:
        parser.error(f"failed to create log file {log_path}: {exc}")

    emitter = EventEmitter(session_id, [log_sink])
    buffer = BufferSink()
    if args.stream_json:
        emitter.add_sink(JsonlSink(sys.stdout))
    elif args.json:
        emitter.add_sink(buffer)
    elif not args.quiet:
        emitter.add_sink(display.render)

    try:
        agent = Agent(config, ChatClient(config, api_key), emitter)
        outcome = agent.run(task)
    finally:
        log_sink.close()
        if args.json:
            buffer.flush(sys.stdout)

    if not (args.json or args.stream_json):
        print(outcome.text)
    return 0 if outcome.ok else 1


if __name__ == "__main__":
    sys.exit(main())

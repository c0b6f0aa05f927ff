"""Command-line interface for apprentice."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import cast

from .agent.models import SessionOutcome, TerminalReason
from .config import AppConfig
from .llm.client import ModelClient
from .registry import RegistryError, SessionRegistry, SessionSettings, is_valid_agent_name
from .transport import WorkerServer

LOGGER = logging.getLogger(__name__)

EXIT_CODES: dict[TerminalReason, int] = {
    "reported": 0,
    "turn_limit_reached": 2,
    "protocol_failure_limit_reached": 3,
    "backend_unavailable": 4,
    "fatal": 5,
    "cancelled": 130,
}


class CLIArgs(argparse.Namespace):
    goal: str | None
    sandbox: str | None
    name: str
    max_turns: int | None
    serve_worker: bool


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="apprentice", description="Autonomous sandboxed agent runner"
    )
    parser.add_argument(
        "--sandbox",
        dest="sandbox",
        help=(
            "Directory holding per-agent sandbox roots. "
            "Takes precedence over config/env sandbox_root values."
        ),
    )
    parser.add_argument("--name", dest="name", default="apprentice", help="Agent name")
    parser.add_argument(
        "--max-turns", dest="max_turns", type=int, help="Override the configured turn limit"
    )
    parser.add_argument(
        "--serve-worker",
        dest="serve_worker",
        action="store_true",
        help="Answer turn requests on stdin/stdout instead of running a session",
    )
    parser.add_argument("goal", nargs="?", help="Goal for the agent session")
    return parser


def build_model_client(config: AppConfig) -> ModelClient:
    return ModelClient(
        api_key=config.api_key,
        model=config.model,
        system_prompt=config.system_prompt,
        api_url=config.api_url,
        max_tokens=config.max_tokens,
        timeout=config.model_timeout,
        history_limit=config.history_limit,
    )


def main() -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args())
    config = AppConfig.from_env()

    if not is_valid_agent_name(args.name):
        print(f"Invalid agent name: {args.name}")
        return 1

    if args.serve_worker:
        server = WorkerServer(
            name=args.name,
            backend=build_model_client(config),
            history_limit=config.history_limit,
        )
        server.serve(sys.stdin.buffer, sys.stdout.buffer)
        return 0

    goal = args.goal or input("Goal: ").strip()
    if not goal:
        print("No goal provided.")
        return 1

    base_dir = Path(args.sandbox or config.sandbox_root).expanduser().resolve()
    if base_dir.exists() and not base_dir.is_dir():
        print(f"Invalid sandbox directory: {base_dir}")
        return 1

    settings = SessionSettings.from_config(config)
    if args.max_turns is not None and args.max_turns > 0:
        settings.max_turns = args.max_turns

    registry = SessionRegistry(
        base_dir=base_dir,
        backend_factory=lambda _name: build_model_client(config),
        settings=settings,
    )
    try:
        registry.summon(args.name)
    except RegistryError as exc:
        print(str(exc))
        return 1

    try:
        outcome = registry.run(args.name, goal)
    except KeyboardInterrupt:
        registry.get(args.name).controller.cancel()
        print("Session interrupted.")
        return EXIT_CODES["cancelled"]

    LOGGER.debug("session_finished", extra={"agent": args.name, "reason": outcome.reason})
    print(render_outcome(outcome))
    return EXIT_CODES[outcome.reason]


def render_outcome(outcome: SessionOutcome) -> str:
    lines = [f"=== Session ended: {outcome.reason} after {outcome.turns} turn(s) ==="]
    if outcome.detail:
        lines.append(outcome.detail)
    if outcome.report:
        lines.append("[report]")
        lines.append(outcome.report.rstrip())
    return "\n".join(lines)


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path

from repobot.config import AppConfig, load_config
from repobot.diagnostics import diagnostic_sink_from_env
from repobot.observability import configure_logging
from repobot.payloads import as_object_dict
from repobot.server import result_payload, serve
from repobot.webhooks import WebhookDispatcher


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="repobot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser(
        "serve", help="Listen for GitHub webhook deliveries and handle them"
    )
    serve_parser.add_argument("--config", type=Path, default=Path("repobot.toml"))
    _add_verbose_argument(serve_parser)

    handle_parser = subparsers.add_parser(
        "handle", help="Handle one recorded webhook delivery and print the result"
    )
    handle_parser.add_argument("--config", type=Path, default=Path("repobot.toml"))
    handle_parser.add_argument(
        "--event",
        required=True,
        help="GitHub event name, as sent in the X-GitHub-Event header",
    )
    handle_parser.add_argument(
        "--payload",
        type=Path,
        required=True,
        help="Path to the JSON delivery body",
    )
    _add_verbose_argument(handle_parser)

    return parser


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    configure_logging(getattr(args, "verbose", None), state_dir=config.runtime.base_dir)

    if args.command == "serve":
        _cmd_serve(config)
        return
    if args.command == "handle":
        _cmd_handle(config, event_name=str(args.event), payload_path=args.payload)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_serve(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    secret = os.environ.get(config.runtime.webhook_secret_env, "")
    serve(config.runtime, _build_dispatcher(config), secret=secret)


def _cmd_handle(config: AppConfig, *, event_name: str, payload_path: Path) -> None:
    payload = as_object_dict(json.loads(payload_path.read_text(encoding="utf-8")))
    if payload is None:
        raise RuntimeError(f"{payload_path} must contain a JSON object")
    result = _build_dispatcher(config).handle(event_name, payload)
    print(json.dumps(result_payload(result), indent=2))


def _build_dispatcher(config: AppConfig) -> WebhookDispatcher:
    return WebhookDispatcher(
        config,
        diagnostics=diagnostic_sink_from_env(config.runtime.diagnostics_path),
    )


def _add_verbose_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr and <base_dir>/logs (default mode: high)",
    )

# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Mirrowel

"""
Codex Account Pool Proxy - Main entry point.

This module handles:
- CLI argument parsing
- Logging configuration
- One-shot commands (status report, credential import)
- Server startup

The actual FastAPI application is created via app_factory.create_app().
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import colorlog
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

console = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="OpenAI Codex account pool proxy")
    parser.add_argument(
        "--host", type=str, default="127.0.0.1", help="Host to bind the server to."
    )
    parser.add_argument("--port", type=int, default=8000, help="Port to run the server on.")
    parser.add_argument(
        "--strategy",
        choices=["sticky", "round-robin", "hybrid"],
        help="Account selection strategy (overrides OPENAI_CODEX_STRATEGY).",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print the account status report and exit.",
    )
    parser.add_argument(
        "--import",
        dest="import_path",
        metavar="PATH",
        help="Import an OAuth credential file (opencode or Codex CLI auth.json) and exit.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser


def configure_logging(debug: bool = False) -> None:
    """Colored console logging for the app and the codex_pool library."""
    console_handler = colorlog.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)
    root_logger.handlers = [console_handler]

    # Silence noisy loggers
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def _print_status() -> None:
    from codex_proxy.startup import build_pool_state
    from codex_pool.status import build_status_report

    state = build_pool_state(import_foreign=False)
    try:
        lines = await build_status_report(state.store, state.tracker, client=state.client)
    finally:
        await state.client.aclose()
    console.print(Panel(Text("\n".join(lines)), border_style="cyan"))


def _import_credential(path: str) -> int:
    from codex_pool import AccountStore, MultiAccountConfig

    store = AccountStore(config=MultiAccountConfig.from_env())
    store.load()
    account = store.import_foreign_credential(Path(path).expanduser())
    if account is None:
        console.print(f"[yellow]No new OAuth credential imported from {path}[/yellow]")
        return 1
    console.print(
        f"[green]Imported account {account.index + 1}: {account.label}[/green] "
        f"({store.count} total)"
    )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    load_dotenv(Path.cwd() / ".env")
    if args.strategy:
        os.environ["OPENAI_CODEX_STRATEGY"] = args.strategy
    if args.debug:
        os.environ["OPENAI_CODEX_DEBUG"] = "true"

    debug = os.getenv("OPENAI_CODEX_DEBUG", "").lower() in ("1", "true", "yes", "on")
    configure_logging(debug)

    if args.import_path:
        return _import_credential(args.import_path)

    if args.status:
        asyncio.run(_print_status())
        return 0

    import uvicorn

    from codex_proxy.app_factory import create_app

    proxy_api_key = os.getenv("PROXY_API_KEY")
    key_display = "set" if proxy_api_key else "not set (open access)"
    console.print("━" * 70)
    console.print(f"Starting Codex pool proxy on {args.host}:{args.port}")
    console.print(f"Proxy API Key: {key_display}")
    console.print("━" * 70)

    uvicorn.run(create_app(), host=args.host, port=args.port, log_config=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())

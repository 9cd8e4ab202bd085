#!/usr/bin/env python3
"""
Argus launcher.

Usage:
  python -m argus
  python -m argus --port 4242 --root ~/.claude/projects --poll-interval 5
  python -m argus --config argus.yaml

Requirements:
  pip install fastapi uvicorn websockets pyyaml rich
"""
import argparse
import logging
import sys
from pathlib import Path

import uvicorn
from rich.console import Console
from rich.panel import Panel

from argus import __version__
from argus.config import Config, load_config_file
from argus.errors import ConfigError

console = Console()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="argus",
        description="Monitor multi-agent coding sessions: idle, working, or waiting on a human.",
    )
    parser.add_argument("--host", help="Bind address (default from ARGUS_HOST or 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Port (default from ARGUS_PORT or 4242)")
    parser.add_argument("--root", action="append", dest="roots", metavar="DIR",
                        help="Transcript root to scan; repeat for several")
    parser.add_argument("--poll-interval", type=float, help="Seconds between discovery ticks")
    parser.add_argument("--reap-interval", type=float, help="Seconds between stale sweeps")
    parser.add_argument("--config", type=Path, help="YAML file with configuration overrides")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--version", action="version", version=f"argus {__version__}")
    return parser


def resolve_config(args: argparse.Namespace) -> Config:
    cfg = Config.from_env()
    if args.config:
        cfg.update(load_config_file(args.config))
    overrides = {
        "host": args.host,
        "port": args.port,
        "transcript_roots": args.roots,
        "poll_interval": args.poll_interval,
        "reap_interval": args.reap_interval,
        "log_level": args.log_level,
    }
    cfg.update({k: v for k, v in overrides.items() if v is not None})
    return cfg


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        cfg = resolve_config(args)
    except ConfigError as e:
        console.print(f"[red bold]Configuration error:[/red bold] {e}")
        sys.exit(2)

    roots = "\n".join(f"  [cyan]{r}[/cyan]" for r in cfg.TRANSCRIPT_ROOTS) or "  (none)"
    console.print(Panel(
        f"[bold]Argus {__version__}[/bold]: multi-agent session monitor\n\n"
        f"Events:    [cyan]http://{cfg.HOST}:{cfg.PORT}/events[/cyan]\n"
        f"WebSocket: [cyan]ws://{cfg.HOST}:{cfg.PORT}/ws[/cyan]\n\n"
        f"Transcript roots:\n{roots}",
        title="Argus",
        border_style="bright_blue",
    ))

    # Importing the app runs its basicConfig; the command-line level goes on top.
    from argus.app import create_app

    logging.getLogger().setLevel(getattr(logging, cfg.LOG_LEVEL.upper(), logging.INFO))

    uvicorn.run(create_app(cfg), host=cfg.HOST, port=cfg.PORT,
                log_level=cfg.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()

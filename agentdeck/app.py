"""agentdeck main application entry point."""

from __future__ import annotations

import logging
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path

from agentdeck.engine.config import AppConfig


def configure_logging(config: AppConfig) -> Path:
    """Send all logging to a rotating file. The TUI owns the terminal."""
    log_file = config.log_path
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    return log_file


def build_config(args) -> AppConfig:
    config = AppConfig.load(args.config)
    overrides = {}
    if args.state_dir:
        overrides["state_dir"] = args.state_dir
    if args.socket:
        overrides["socket_path"] = args.socket
    if args.agent_cli:
        overrides["agent_cli"] = args.agent_cli
    return replace(config, **overrides) if overrides else config


def main(argv: list[str] | None = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentdeck",
        description="agentdeck: terminal dashboard for AI coding-agent sessions",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ~/.agentdeck/config.yaml)",
    )
    parser.add_argument(
        "--state-dir", metavar="PATH",
        help="Agent CLI session-state directory",
    )
    parser.add_argument(
        "--socket", metavar="PATH",
        help="Unix socket the companion hooks write to",
    )
    parser.add_argument(
        "--agent-cli", metavar="BIN",
        help="Agent CLI used for interactive terminal sessions",
    )
    args = parser.parse_args(argv)

    config = build_config(args)
    try:
        log_file = configure_logging(config)
    except OSError as exc:
        print(f"Error: cannot open log directory {config.log_dir}: {exc}", file=sys.stderr)
        sys.exit(1)
    logging.getLogger(__name__).info(
        "Starting agentdeck state_dir=%s socket=%s agent_cli=%s policy=%s log=%s",
        config.state_dir,
        config.socket_path,
        config.agent_cli,
        config.permission_policy,
        log_file,
    )

    from agentdeck.tui.app import AgentDeckApp

    app = AgentDeckApp(config)
    app.run()


if __name__ == "__main__":
    main()

"""Application configuration.

Defaults are overridden by ``~/.agentdeck/config.yaml`` (or the file given
with ``--config``) and then by ``AGENTDECK_*`` environment variables.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

logger = logging.getLogger(__name__)

PERMISSION_POLICIES = ("prompt", "allow", "deny")


def default_config_path() -> Path:
    return Path.home() / ".agentdeck" / "config.yaml"


@dataclass
class AppConfig:
    """Runtime settings for the dashboard and its event sources."""

    # Where the agent CLI keeps <id>/workspace.yaml and <id>/events.jsonl
    state_dir: str = "~/.copilot/session-state"
    socket_path: str = "~/.agentdeck/agentdeck.sock"
    agent_cli: str = "copilot"
    log_dir: str = "~/.agentdeck/logs"
    log_level: str = "INFO"

    rescan_interval_seconds: float = 5.0
    debounce_seconds: float = 0.1
    hook_queue_size: int = 64
    status_flash_seconds: float = 4.0

    # "prompt" waits for the user, "allow" and "deny" answer at once.
    permission_policy: str = "prompt"
    # Unanswered prompts fall back to deny / empty answer. 0 disables.
    permission_timeout_seconds: float = 300.0

    export_dir: str = "."

    # Mirrors the companion hook's deny policy.
    denied_tools: list[str] = field(default_factory=list)
    denied_patterns: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.permission_policy not in PERMISSION_POLICIES:
            logger.warning(
                "Unknown permission_policy %r, using 'prompt'", self.permission_policy
            )
            self.permission_policy = "prompt"

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir).expanduser()

    @property
    def socket_file(self) -> Path:
        return Path(self.socket_path).expanduser()

    @property
    def log_path(self) -> Path:
        return Path(self.log_dir).expanduser() / "agentdeck.log"

    def is_denied(self, tool_name: str, tool_args: str = "") -> tuple[bool, str]:
        """Apply the deny lists to a tool invocation reported by a hook."""
        lowered = tool_name.lower()
        for denied in self.denied_tools:
            if denied.lower() == lowered:
                return True, f"Tool '{tool_name}' is denied by policy"
        args = tool_args.lower()
        for pattern in self.denied_patterns:
            if pattern and pattern.lower() in args:
                return True, f"Arguments match denied pattern '{pattern}'"
        return False, ""

    @classmethod
    def from_yaml(cls, path: str | Path) -> AppConfig:
        """Load settings from a YAML file, falling back to defaults on errors."""
        return cls(**_yaml_overrides(Path(path).expanduser()))

    @classmethod
    def from_env(
        cls,
        base: AppConfig | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> AppConfig:
        """Apply ``AGENTDECK_*`` environment variables on top of *base*."""
        env = os.environ if environ is None else environ
        config = base or cls()
        deck_vars = sorted(k for k in env if k.startswith("AGENTDECK_"))
        if deck_vars:
            logger.info("AppConfig.from_env: env overrides: %s", ", ".join(deck_vars))

        overrides: dict[str, Any] = {}
        for name, var, convert in _ENV_VARS:
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            try:
                overrides[name] = convert(raw)
            except ValueError:
                logger.warning("Ignoring invalid %s=%r", var, raw)
        return replace(config, **overrides)

    @classmethod
    def load(
        cls,
        path: str | Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> AppConfig:
        """Defaults, then the YAML file, then the environment."""
        config_path = Path(path).expanduser() if path else default_config_path()
        base = cls(**_yaml_overrides(config_path))
        config = cls.from_env(base, environ)
        logger.info(
            "AppConfig: state_dir=%s socket=%s agent_cli=%s policy=%s",
            config.state_dir, config.socket_path, config.agent_cli,
            config.permission_policy,
        )
        return config


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


_ENV_VARS: list[tuple[str, str, Any]] = [
    ("state_dir", "AGENTDECK_STATE_DIR", str),
    ("socket_path", "AGENTDECK_SOCKET", str),
    ("agent_cli", "AGENTDECK_AGENT_CLI", str),
    ("log_dir", "AGENTDECK_LOG_DIR", str),
    ("log_level", "AGENTDECK_LOG_LEVEL", str.upper),
    ("rescan_interval_seconds", "AGENTDECK_RESCAN_INTERVAL", float),
    ("permission_policy", "AGENTDECK_PERMISSION_POLICY", str.lower),
    ("permission_timeout_seconds", "AGENTDECK_PERMISSION_TIMEOUT", float),
    ("export_dir", "AGENTDECK_EXPORT_DIR", str),
    ("denied_tools", "AGENTDECK_DENIED_TOOLS", _split_list),
    ("denied_patterns", "AGENTDECK_DENIED_PATTERNS", _split_list),
]


def _yaml_overrides(path: Path) -> dict[str, Any]:
    if not path.is_file():
        logger.debug("No config file at %s, using defaults", path)
        return {}
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Cannot load config %s, using defaults: %s", path, exc)
        return {}
    if not isinstance(raw, dict):
        logger.warning("Config %s is not a mapping, using defaults", path)
        return {}

    known = {f.name: f for f in fields(AppConfig)}
    overrides: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known:
            logger.debug("Ignoring unknown config key %r in %s", key, path)
            continue
        if key in ("denied_tools", "denied_patterns"):
            if not isinstance(value, list):
                logger.warning("Config key %r must be a list", key)
                continue
            value = [str(item) for item in value]
        elif isinstance(getattr(AppConfig, key, None), float):
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Config key %r must be a number", key)
                continue
        elif isinstance(getattr(AppConfig, key, None), int):
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Config key %r must be an integer", key)
                continue
        else:
            value = str(value)
        overrides[key] = value
    logger.info("Loaded config %s (%d keys)", path, len(overrides))
    return overrides

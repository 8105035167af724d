"""Relay configuration loading with layered precedence.

Configuration precedence (highest wins):
1. Command-line flags (applied by the caller via overrides)
2. Environment variables (ROO_RELAY_*, ROO_CODE_IPC_SOCKET_PATH)
3. Project config (<workspace>/.roo-relay/relay.json)
4. User config (~/.roo-relay/relay.json)
5. Built-in defaults

Usage:
    from relay.config import load_relay_config

    config = load_relay_config(Path.cwd(), overrides={"port": 8888})

Environment Variables:
    ROO_RELAY_HOST: TCP bind host (default: localhost)
    ROO_RELAY_PORT: TCP port (default: 7777)
    ROO_RELAY_UNIX_SOCKET: Extra Unix socket listener for local clients
    ROO_CODE_IPC_SOCKET_PATH: Upstream Roo Code IPC socket
    ROO_RELAY_UPSTREAM_FRAMING: node-ipc or ndjson (default: node-ipc)
    ROO_RELAY_RETRY_INTERVAL: Seconds between upstream attempts (default: 1.5)
    ROO_RELAY_SOCKET_POLL_INTERVAL: Seconds between socket checks (default: 2.0)
    ROO_RELAY_MAX_RECONNECT_ATTEMPTS: Give up after this many failures (default: unbounded)
    ROO_RELAY_MESSAGE_COOLDOWN: Dedup window for notifications (default: 3.0)
    ROO_RELAY_QUESTION_COOLDOWN: Dedup window for questions (default: 5.0)
    ROO_RELAY_HISTORY_SIZE: Relayed events kept for replay (default: 1000)
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, get_type_hints

from .framing import FRAMING_NAMES

logger = logging.getLogger(__name__)


CONFIG_DIR_NAME = ".roo-relay"
CONFIG_FILE_NAME = "relay.json"


def _parse_bool(value: str) -> bool:
    """Parse boolean from string."""
    return value.lower() in ("true", "1", "yes", "on")


def _parse_env_value(value: str, target_type: Type) -> Any:
    """Parse environment variable value to target type."""
    # Extract inner type from Optional
    args = getattr(target_type, '__args__', ())
    if args and type(None) in args:
        if value.strip().lower() in ("", "none", "null"):
            return None
        inner_types = [a for a in args if a is not type(None)]
        if inner_types:
            target_type = inner_types[0]

    if target_type == bool:
        return _parse_bool(value)
    elif target_type == int:
        return int(value)
    elif target_type == float:
        return float(value)
    return value


@dataclass
class RelayConfig:
    """Relay daemon settings.

    Attributes:
        host: TCP bind host for downstream clients.
        port: TCP port for downstream clients (0 picks a free port).
        unix_socket: Optional Unix socket path for local clients.
        upstream_socket: Path of the Roo Code IPC socket.
        upstream_framing: Wire framing used with the upstream peer.
        retry_interval: Seconds between upstream connection attempts.
        socket_poll_interval: Seconds between checks for a missing socket.
        max_reconnect_attempts: Consecutive upstream failures before giving
            up; None retries forever.
        message_cooldown: Dedup window for plain notifications, seconds.
        question_cooldown: Dedup window for question messages, seconds.
        dedup_max_entries: Dedup cache size that triggers a sweep.
        history_size: Relayed TaskEvents kept in memory.
        replay_count: History entries replayed to a new client.
    """
    host: str = "localhost"
    port: int = 7777
    unix_socket: Optional[str] = None
    upstream_socket: Optional[str] = None
    upstream_framing: str = "node-ipc"
    retry_interval: float = 1.5
    socket_poll_interval: float = 2.0
    max_reconnect_attempts: Optional[int] = None
    message_cooldown: float = 3.0
    question_cooldown: float = 5.0
    dedup_max_entries: int = 100
    history_size: int = 1000
    replay_count: int = 10

    def __post_init__(self):
        """Validate configuration values."""
        if not (0 <= self.port <= 65535):
            raise ValueError("port must be between 0 and 65535")
        if self.upstream_framing not in FRAMING_NAMES:
            raise ValueError(f"upstream_framing must be one of {', '.join(FRAMING_NAMES)}")
        if self.retry_interval <= 0:
            raise ValueError("retry_interval must be positive")
        if self.socket_poll_interval <= 0:
            raise ValueError("socket_poll_interval must be positive")
        if self.max_reconnect_attempts is not None and self.max_reconnect_attempts < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")
        if self.message_cooldown < 0 or self.question_cooldown < 0:
            raise ValueError("cooldowns must not be negative")
        if self.dedup_max_entries < 1:
            raise ValueError("dedup_max_entries must be at least 1")
        if self.history_size < 0 or self.replay_count < 0:
            raise ValueError("history_size and replay_count must not be negative")


# Maps config fields to environment variable names
ENV_VAR_MAPPING: Dict[str, str] = {
    "host": "ROO_RELAY_HOST",
    "port": "ROO_RELAY_PORT",
    "unix_socket": "ROO_RELAY_UNIX_SOCKET",
    "upstream_socket": "ROO_CODE_IPC_SOCKET_PATH",
    "upstream_framing": "ROO_RELAY_UPSTREAM_FRAMING",
    "retry_interval": "ROO_RELAY_RETRY_INTERVAL",
    "socket_poll_interval": "ROO_RELAY_SOCKET_POLL_INTERVAL",
    "max_reconnect_attempts": "ROO_RELAY_MAX_RECONNECT_ATTEMPTS",
    "message_cooldown": "ROO_RELAY_MESSAGE_COOLDOWN",
    "question_cooldown": "ROO_RELAY_QUESTION_COOLDOWN",
    "history_size": "ROO_RELAY_HISTORY_SIZE",
}


def get_config_paths(workspace_path: Optional[Path] = None) -> Dict[str, Path]:
    """Get the paths where config files are searched."""
    paths = {"user": Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME}
    if workspace_path:
        paths["project"] = workspace_path / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    return paths


def _find_config_files(workspace_path: Optional[Path] = None) -> List[Path]:
    """Existing config files, lowest precedence first."""
    return [p for p in get_config_paths(workspace_path).values() if p.exists()]


def _apply_env_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to a config dict."""
    result = config_dict.copy()
    hints = get_type_hints(RelayConfig)

    for name, env_var in ENV_VAR_MAPPING.items():
        env_value = os.environ.get(env_var)
        if env_value is None:
            continue
        try:
            result[name] = _parse_env_value(env_value, hints.get(name, str))
            logger.debug(f"Applied env override: {env_var}={env_value}")
        except (ValueError, TypeError) as e:
            logger.warning(f"Invalid value for {env_var}: {env_value} ({e})")

    return result


def _dict_to_config(data: Dict[str, Any]) -> RelayConfig:
    """Convert a merged dict to RelayConfig, dropping bad values.

    Unknown keys are ignored. If the merged values fail validation, each
    non-default value is tried on its own and the invalid ones are dropped.
    """
    valid_fields = {f.name for f in fields(RelayConfig)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}

    unknown = {k for k in data if k not in valid_fields and not k.startswith("_")}
    if unknown:
        logger.warning(f"Unknown relay config keys (ignored): {unknown}")

    try:
        return RelayConfig(**filtered)
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid relay config values: {e}")

    kept: Dict[str, Any] = {}
    for key, value in filtered.items():
        try:
            RelayConfig(**{**kept, key: value})
            kept[key] = value
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring relay config '{key}'={value!r}: {e}")
    return RelayConfig(**kept)


def load_relay_config(
    workspace_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> RelayConfig:
    """Load relay configuration with layered precedence.

    Args:
        workspace_path: Project directory for project-level config.
        overrides: Values from command-line flags; None values are skipped.
            These are not filtered: an invalid override raises ValueError.

    Returns:
        Merged RelayConfig instance.
    """
    merged: Dict[str, Any] = {}

    for config_file in _find_config_files(workspace_path):
        try:
            with open(config_file) as f:
                file_config = json.load(f)

            if not isinstance(file_config, dict):
                logger.warning(f"Invalid config format in {config_file} (expected object)")
                continue

            merged.update(file_config)
            logger.debug(f"Loaded config from {config_file}")

        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in {config_file}: {e}")
        except PermissionError:
            logger.warning(f"Permission denied reading {config_file}")

    merged = _apply_env_overrides(merged)
    config = _dict_to_config(merged)

    if overrides:
        values = {f.name: getattr(config, f.name) for f in fields(RelayConfig)}
        values.update({k: v for k, v in overrides.items() if v is not None})
        config = RelayConfig(**values)

    return config


class FlagParser(argparse.ArgumentParser):
    """ArgumentParser whose usage errors exit with status 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")

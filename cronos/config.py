"""
Configuration management for Cronos.

Handles the data directory location, execution settings (shell, default
agent model) and logging configuration.

Every value is resolved in this order (highest to lowest priority):
1. Explicitly passed argument
2. Environment variable (a ``.env`` file is loaded first)
3. Settings file (``<data dir>/settings.json``)
4. Built-in default
"""

import json
import logging
import os
import shlex
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Tuple, Dict, Any

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "~/.cronos"
SETTINGS_FILE_NAME = "settings.json"

# Environment variables
ENV_DATA_DIR = "CRONOS_HOME"
ENV_SHELL = "CRONOS_SHELL"
ENV_SHELL_FLAGS = "CRONOS_SHELL_FLAGS"
ENV_DEFAULT_MODEL = "CRONOS_DEFAULT_MODEL"
ENV_AGENT_EXECUTABLE = "CRONOS_AGENT_EXECUTABLE"
ENV_WEBHOOK_URL = "CRONOS_WEBHOOK_URL"
ENV_LOG_LEVEL = "CRONOS_LOG_LEVEL"

DEFAULT_SHELL_FLAGS = ("-l", "-i")


def resolve_data_dir(data_dir: Optional[str] = None) -> Path:
    """
    Resolve the root directory holding jobs, run history and logs.

    Args:
        data_dir: Explicit directory. If None, uses CRONOS_HOME or ~/.cronos.

    Returns:
        Absolute, home-expanded path (not created)
    """
    if data_dir:
        return Path(data_dir).expanduser().resolve()

    env_dir = os.getenv(ENV_DATA_DIR)
    if env_dir:
        logger.debug(f"Using data dir from {ENV_DATA_DIR}: {env_dir}")
        return Path(env_dir).expanduser().resolve()

    return Path(DEFAULT_DATA_DIR).expanduser().resolve()


def _default_shell() -> str:
    return os.environ.get("SHELL") or "/bin/zsh"


@dataclass
class Settings:
    """
    Process-wide execution settings.

    Passed explicitly into command materialisation and execution rather than
    looked up globally, so the engine can be driven with any settings.

    The shell defaults to $SHELL (/bin/zsh if unset) started with `-l -i`.
    Run without a terminal, an interactive bash prints "no job control in
    this shell" to stderr, so every job's stderr log starts with that line.
    zsh stays quiet; with bash, set CRONOS_SHELL_FLAGS="-l" or
    "shell_flags": ["-l"] in settings.json.
    """
    shell: str = field(default_factory=_default_shell)
    shell_flags: Tuple[str, ...] = DEFAULT_SHELL_FLAGS
    default_model: str = "sonnet"
    agent_executable: str = "claude"
    notify_on_success: bool = True
    webhook_url: Optional[str] = None

    @classmethod
    def load(cls, data_dir: Optional[str] = None, **overrides) -> 'Settings':
        """
        Build settings from the settings file, environment and overrides.

        Args:
            data_dir: Data directory holding settings.json
            **overrides: Explicit field values (None values are ignored)

        Returns:
            Settings instance
        """
        values: Dict[str, Any] = {}

        settings_path = resolve_data_dir(data_dir) / SETTINGS_FILE_NAME
        if settings_path.exists():
            try:
                with open(settings_path, 'r', encoding='utf-8') as f:
                    file_values = json.load(f)
                if isinstance(file_values, dict):
                    values.update(
                        (k, v) for k, v in file_values.items()
                        if k in cls.__dataclass_fields__
                    )
                else:
                    logger.warning(f"Ignoring settings file {settings_path}: expected a JSON object")
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Failed to load settings file {settings_path}: {e}")

        env_map = {
            ENV_SHELL: 'shell',
            ENV_DEFAULT_MODEL: 'default_model',
            ENV_AGENT_EXECUTABLE: 'agent_executable',
            ENV_WEBHOOK_URL: 'webhook_url',
        }
        for env_name, key in env_map.items():
            if os.environ.get(env_name):
                values[key] = os.environ[env_name]
        if ENV_SHELL_FLAGS in os.environ:
            values['shell_flags'] = shlex.split(os.environ[ENV_SHELL_FLAGS])

        values.update((k, v) for k, v in overrides.items() if v is not None)

        if 'shell_flags' in values:
            values['shell_flags'] = tuple(values['shell_flags'])

        return cls(**values)

    def save(self, data_dir: Optional[str] = None) -> Path:
        """Save settings to <data dir>/settings.json."""
        settings_path = resolve_data_dir(data_dir) / SETTINGS_FILE_NAME
        settings_path.parent.mkdir(parents=True, exist_ok=True)

        data = asdict(self)
        data['shell_flags'] = list(self.shell_flags)

        with open(settings_path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, sort_keys=True)

        logger.info(f"Saved settings to {settings_path}")
        return settings_path


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = field(default_factory=lambda: os.environ.get(ENV_LOG_LEVEL, "INFO"))
    file: Optional[str] = None  # Set from the data dir in for_data_dir()
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    @classmethod
    def for_data_dir(cls, data_dir: Optional[str] = None, **kwargs) -> 'LoggingConfig':
        config = cls(**kwargs)
        if config.file is None:
            config.file = str(resolve_data_dir(data_dir) / "logs" / "cronos.log")
        return config

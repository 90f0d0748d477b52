"""Configuration loading and validation for the language server bridge.

This module handles loading ``.noulith-bridge.json`` files and validating
their structure. Example::

    {
        "command": "${workspaceRoot}/target/debug/noulith-lsp",
        "args": [],
        "envFile": "${workspaceRoot}/.env",
        "watchPatterns": ["**/*.noul"],
        "requestTimeout": 30
    }
"""

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dotenv import dotenv_values

from .errors import ConfigValidationError

CONFIG_ENV_VAR = "NOULITH_BRIDGE_CONFIG"
CONFIG_FILENAME = ".noulith-bridge.json"

DEFAULT_COMMAND = "noulith-lsp"
DEFAULT_LANGUAGE_ID = "noulith"

_TIMEOUT_KEYS = ("requestTimeout", "shutdownTimeout", "startTimeout", "terminateTimeout")

_VARIABLE_RE = re.compile(r"\$\{(workspaceRoot|workspaceFolder|env:([A-Za-z_][A-Za-z0-9_]*))\}")


@dataclass
class BridgeConfig:
    """Structured representation of a bridge configuration file."""

    # Process
    command: str = DEFAULT_COMMAND
    args: List[str] = field(default_factory=list)
    env: Optional[Dict[str, str]] = None
    env_file: Optional[str] = None
    cwd: Optional[str] = None

    # Workspace
    root_path: Optional[str] = None
    language_id: str = DEFAULT_LANGUAGE_ID
    file_extensions: List[str] = field(default_factory=lambda: [".noul"])
    watch_patterns: List[str] = field(default_factory=lambda: ["**/*.noul"])
    configuration_section: str = DEFAULT_LANGUAGE_ID
    initialization_options: Optional[Dict[str, Any]] = None

    # Timeouts (seconds)
    request_timeout: float = 30.0
    shutdown_timeout: float = 5.0
    start_timeout: float = 15.0
    terminate_timeout: float = 5.0

    # Name used in logs
    name: str = DEFAULT_LANGUAGE_ID

    @property
    def workspace_root(self) -> str:
        return os.path.abspath(self.root_path or os.getcwd())

    def process_env(self) -> Optional[Dict[str, str]]:
        """Extra environment for the server: ``env_file`` values, then ``env``."""
        if not self.env_file and not self.env:
            return None
        merged: Dict[str, str] = {}
        if self.env_file:
            if not os.path.exists(self.env_file):
                raise FileNotFoundError(f"Env file not found: {self.env_file}")
            merged.update({k: v for k, v in dotenv_values(self.env_file).items() if v is not None})
        merged.update(self.env or {})
        return merged

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BridgeConfig":
        """Build a config from a validated dict, expanding variables."""
        defaults = cls()
        root = data.get("rootPath")
        root = os.path.abspath(expand_variables(root)) if root else None
        expanded = expand_variables(data, workspace_root=root)
        return cls(
            command=expanded.get("command", defaults.command),
            args=list(expanded.get("args", [])),
            env=expanded.get("env"),
            env_file=expanded.get("envFile"),
            cwd=expanded.get("cwd"),
            root_path=root,
            language_id=expanded.get("languageId", defaults.language_id),
            file_extensions=list(expanded.get("fileExtensions", defaults.file_extensions)),
            watch_patterns=list(expanded.get("watchPatterns", defaults.watch_patterns)),
            configuration_section=expanded.get("configurationSection", defaults.configuration_section),
            initialization_options=expanded.get("initializationOptions"),
            request_timeout=float(expanded.get("requestTimeout", defaults.request_timeout)),
            shutdown_timeout=float(expanded.get("shutdownTimeout", defaults.shutdown_timeout)),
            start_timeout=float(expanded.get("startTimeout", defaults.start_timeout)),
            terminate_timeout=float(expanded.get("terminateTimeout", defaults.terminate_timeout)),
            name=expanded.get("name", defaults.name),
        )


def expand_variables(value: Any, workspace_root: Optional[str] = None) -> Any:
    """Expand ``${workspaceRoot}``, ``${env:NAME}``, ``$VAR`` and ``~``.

    Works recursively on strings, lists and dicts; other values pass
    through unchanged.
    """
    if isinstance(value, dict):
        return {k: expand_variables(v, workspace_root) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_variables(v, workspace_root) for v in value]
    if not isinstance(value, str):
        return value

    root = workspace_root or os.getcwd()

    def replace(match: "re.Match[str]") -> str:
        env_name = match.group(2)
        if env_name:
            return os.environ.get(env_name, "")
        return root

    expanded = _VARIABLE_RE.sub(replace, value)
    expanded = os.path.expandvars(expanded)
    if expanded.startswith("~"):
        expanded = os.path.expanduser(expanded)
    return expanded


def _is_str_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def validate_config(config: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Validate a bridge configuration dict.

    Args:
        config: Raw configuration dict loaded from JSON

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    errors: List[str] = []

    if not isinstance(config, dict):
        return False, ["Configuration must be a JSON object"]

    command = config.get("command")
    if command is not None and (not isinstance(command, str) or not command.strip()):
        errors.append("'command' must be a non-empty string")

    for key in ("args", "watchPatterns", "fileExtensions"):
        value = config.get(key)
        if value is not None and not _is_str_list(value):
            errors.append(f"'{key}' must be a list of strings")

    env = config.get("env")
    if env is not None:
        if not isinstance(env, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in env.items()
        ):
            errors.append("'env' must be an object of string values")

    for key in ("cwd", "envFile", "rootPath", "languageId", "configurationSection", "name"):
        value = config.get(key)
        if value is not None and not isinstance(value, str):
            errors.append(f"'{key}' must be a string")

    options = config.get("initializationOptions")
    if options is not None and not isinstance(options, dict):
        errors.append("'initializationOptions' must be an object")

    for key in _TIMEOUT_KEYS:
        value = config.get(key)
        if value is not None and (
            isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0
        ):
            errors.append(f"'{key}' must be a positive number")

    return len(errors) == 0, errors


def load_config(
    path: Optional[str] = None,
    env_var: str = CONFIG_ENV_VAR,
) -> BridgeConfig:
    """Load and validate a bridge configuration file.

    Search order:
    1. Explicit ``path``
    2. Path in the ``env_var`` environment variable
    3. ``.noulith-bridge.json`` in the current working directory
    4. ``~/.noulith-bridge.json``

    Returns:
        BridgeConfig instance (defaults when no file is found)

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist
        ConfigValidationError: If config validation fails
        json.JSONDecodeError: If config file is not valid JSON
    """
    if path is None:
        path = os.environ.get(env_var)

    if path is None:
        default_paths = [
            Path.cwd() / CONFIG_FILENAME,
            Path.home() / CONFIG_FILENAME,
        ]
        for default_path in default_paths:
            if default_path.exists():
                path = str(default_path)
                break

    if path is None:
        return BridgeConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Bridge config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        raw_config = json.load(f)

    is_valid, errors = validate_config(raw_config)
    if not is_valid:
        raise ConfigValidationError(errors)

    return BridgeConfig.from_dict(raw_config)

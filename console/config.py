"""
Moorage - Configuration Manager
=================================
Loads console settings from three layers, lowest priority first:

1. DEFAULTS      - Built-in values below
2. config.yaml   - Optional file in the project directory
3. Environment   - Variables set by the hosting platform (or .env)

The hosting platform is the usual source of truth, so the environment
always wins. config.yaml exists for local runs and for settings that have
no environment variable.

Usage:
    config = ConfigManager(project_dir="/path/to/moorage")
    settings = config.load()           # Returns merged config dict
    settings["gateway"]["port"]        # 18789
"""

import os
import shlex
from typing import Any

import yaml


# Default configuration values used when config.yaml is missing or incomplete.
DEFAULTS = {
    "web": {
        "port": 8080,
        "host": "0.0.0.0",
    },
    "auth": {
        "password": "",
        "cookie_name": "moorage_auth",
        "cookie_max_age": 86400,
    },
    "gateway": {
        "command": ["openclaw"],
        "port": 18789,
        "state_dir": "/data/.openclaw",
        "workspace_dir": "/data/workspace",
        "config_file": "openclaw.json",
        "token": "",
        "plugins_dir": "",
        "browsers_path": "",
        "allowed_origins": [],
        "ready_timeout": 90,
        "background_probe_timeout": 300,
        "probe_interval": 0.5,
        "stop_grace": 10,
        "restart_delay": 5,
        "max_restart_attempts": 0,
        "log_capacity": 1000,
        "autostart": True,
    },
    "terminal": {
        "shell": ["/bin/bash"],
        "onboard_command": ["openclaw", "onboard"],
        "cols": 120,
        "rows": 30,
        "paste_delay_ms": 5,
    },
}

# Environment variable -> (section, key, kind)
ENV_OVERRIDES = {
    "PORT": ("web", "port", "int"),
    "SETUP_PASSWORD": ("auth", "password", "str"),
    "INTERNAL_GATEWAY_PORT": ("gateway", "port", "int"),
    "OPENCLAW_STATE_DIR": ("gateway", "state_dir", "str"),
    "OPENCLAW_WORKSPACE_DIR": ("gateway", "workspace_dir", "str"),
    "OPENCLAW_GATEWAY_TOKEN": ("gateway", "token", "str"),
    "OPENCLAW_BUNDLED_PLUGINS_DIR": ("gateway", "plugins_dir", "str"),
    "PLAYWRIGHT_BROWSERS_PATH": ("gateway", "browsers_path", "str"),
    "GATEWAY_COMMAND": ("gateway", "command", "argv"),
    "ALLOWED_ORIGINS": ("gateway", "allowed_origins", "list"),
}


class ConfigManager:
    """
    Settings loader for the Moorage console.

    Attributes:
        project_dir: Root directory of the Moorage project.
        config_path: Full path to config.yaml.
    """

    def __init__(self, project_dir: str, environ: dict[str, str] | None = None):
        """
        Initialize the config manager.

        Args:
            project_dir: Absolute path to the Moorage project root directory.
            environ:     Environment mapping to read overrides from
                         (defaults to os.environ).
        """
        self.project_dir = project_dir
        self.config_path = os.path.join(project_dir, "config.yaml")
        self.environ = os.environ if environ is None else environ

    def load(self) -> dict:
        """
        Load and merge configuration: defaults, then config.yaml, then env.

        A corrupt config.yaml does not raise; the parser message is stored
        under `_config_error` and the defaults (plus env) are used.

        Returns:
            A dictionary containing the full configuration.

        Raises:
            ValueError: If an integer environment variable does not parse.
        """
        config = _deep_copy(DEFAULTS)

        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    user_config = yaml.safe_load(f) or {}
                if not isinstance(user_config, dict):
                    raise yaml.YAMLError("config.yaml must contain a mapping")
                _deep_merge(config, user_config)
            except (yaml.YAMLError, OSError) as e:
                config["_config_error"] = str(e)

        self._apply_env(config)
        return config

    def _apply_env(self, config: dict) -> None:
        """Overlay recognized environment variables onto `config` (in-place)."""
        for name, (section, key, kind) in ENV_OVERRIDES.items():
            raw = self.environ.get(name)
            if raw is None or raw.strip() == "":
                continue
            config[section][key] = _parse_env_value(name, raw.strip(), kind)

        # Public hostname assigned by the hosting platform
        domain = (self.environ.get("RAILWAY_PUBLIC_DOMAIN") or "").strip()
        if domain:
            origin = f"https://{domain}"
            origins = config["gateway"].setdefault("allowed_origins", [])
            if origin not in origins:
                origins.append(origin)


# -- Helper Functions ---------------------------------------------------------

def _parse_env_value(name: str, raw: str, kind: str) -> Any:
    if kind == "int":
        try:
            return int(raw)
        except ValueError:
            raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if kind == "argv":
        return shlex.split(raw)
    if kind == "list":
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def _deep_copy(d: dict) -> dict:
    """Create a deep copy of a nested dictionary."""
    result = {}
    for key, value in d.items():
        if isinstance(value, dict):
            result[key] = _deep_copy(value)
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _deep_merge(base: dict, override: dict) -> None:
    """
    Recursively merge 'override' into 'base' (in-place).

    For nested dicts, values are merged recursively.
    For all other types, override replaces base.
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value

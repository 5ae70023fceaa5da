"""Gateway configuration.

Values are layered, later wins:
    1. Defaults below
    2. JSON config file (~/.usage-gateway/config.json unless given)
    3. Environment (USAGE_GATEWAY_*, SERVICE_PORT)
    4. Explicit overrides (CLI flags)

Keys in the JSON file use the upper-case names (HOST, PORT, APIKEY, ...).
"""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import logfire

from .errors import ConfigError

HOME_DIR = Path(os.environ.get("USAGE_GATEWAY_HOME", Path.home() / ".usage-gateway"))
CONFIG_FILE = HOME_DIR / "config.json"
DEFAULT_PID_FILE = HOME_DIR / ".usage-gateway.pid"

DEFAULT_PORT = 3456
DEFAULT_UPSTREAM_URL = "https://api.anthropic.com"
TRACKED_PREFIX = "/v1/messages"

# JSON key -> GatewayConfig field
_FILE_KEYS = {
    "HOST": "host",
    "PORT": "port",
    "APIKEY": "api_key",
    "LOG": "log",
    "LOG_LEVEL": "log_level",
    "UPSTREAM_URL": "upstream_url",
    "UPSTREAM_API_KEY": "upstream_api_key",
    "SESSION_CACHE_SIZE": "session_cache_size",
    "DISPATCH_TIMEOUT": "dispatch_timeout",
    "PID_FILE": "pid_file",
    "Providers": "providers",
    "providers": "providers",
}

# Environment variable -> GatewayConfig field
_ENV_KEYS = {
    "USAGE_GATEWAY_HOST": "host",
    "USAGE_GATEWAY_PORT": "port",
    "USAGE_GATEWAY_APIKEY": "api_key",
    "USAGE_GATEWAY_LOG": "log",
    "USAGE_GATEWAY_LOG_LEVEL": "log_level",
    "USAGE_GATEWAY_UPSTREAM_URL": "upstream_url",
    "USAGE_GATEWAY_UPSTREAM_API_KEY": "upstream_api_key",
    "USAGE_GATEWAY_SESSION_CACHE_SIZE": "session_cache_size",
    "USAGE_GATEWAY_DISPATCH_TIMEOUT": "dispatch_timeout",
    # Set by the launcher when the service runs in the background
    "SERVICE_PORT": "port",
}


@dataclass
class GatewayConfig:
    """Runtime settings for one gateway process."""

    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    api_key: str | None = None
    log: bool = True
    log_level: str = "debug"
    upstream_url: str = DEFAULT_UPSTREAM_URL
    upstream_api_key: str | None = None
    session_cache_size: int = 100
    dispatch_timeout: float | None = None
    tracked_prefix: str = TRACKED_PREFIX
    pid_file: Path = DEFAULT_PID_FILE
    providers: list[dict[str, Any]] = field(default_factory=list)

    def effective_host(self) -> str:
        """Host to bind to. Without an API key the gateway stays local."""
        if self.host != "127.0.0.1" and not self.api_key:
            return "127.0.0.1"
        return self.host


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw file/env value to the type of the named field."""
    if value is None:
        return None
    try:
        if name in ("port", "session_cache_size"):
            return int(value)
        if name == "dispatch_timeout":
            return float(value) if value != "" else None
        if name == "log":
            if isinstance(value, str):
                return value.lower() not in ("0", "false", "no", "off")
            return bool(value)
        if name == "log_level":
            return str(value).lower()
        if name == "pid_file":
            return Path(value).expanduser()
        if name == "providers":
            if not isinstance(value, list):
                raise ConfigError("providers must be a list")
            return value
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e
    return str(value)


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        raw = json.loads(path.read_text())
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")

    values = {}
    for key, value in raw.items():
        name = _FILE_KEYS.get(key)
        if name is not None:
            values[name] = _coerce(name, value)
    return values


def load_config(
    path: Path | str | None = None,
    overrides: dict[str, Any] | None = None,
) -> GatewayConfig:
    """Build a GatewayConfig from file, environment and overrides.

    Args:
        path: Config file to read (defaults to CONFIG_FILE; missing is fine)
        overrides: Field values that beat everything else (None values skipped)

    Returns:
        The merged configuration

    Raises:
        ConfigError: The file isn't a JSON object, or a value has the wrong type
    """
    config_path = Path(path) if path is not None else CONFIG_FILE
    values = _read_config_file(config_path)

    for env_name, name in _ENV_KEYS.items():
        env_value = os.environ.get(env_name)
        if env_value:
            values[name] = _coerce(name, env_value)

    known = {f.name for f in fields(GatewayConfig)}
    for name, value in (overrides or {}).items():
        if name not in known:
            raise ConfigError(f"Unknown config option: {name}")
        if value is not None:
            values[name] = _coerce(name, value) if name != "tracked_prefix" else value

    config = GatewayConfig(**values)
    if config.session_cache_size < 1:
        raise ConfigError("SESSION_CACHE_SIZE must be at least 1")
    return config


def ensure_home_dir(home: Path = HOME_DIR) -> Path:
    """Create the gateway home directory if missing."""
    home.mkdir(parents=True, exist_ok=True)
    logfire.debug(f"Gateway home: {home}")
    return home

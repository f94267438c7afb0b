"""
capgate configuration - loading and validation.

This module provides the Config class for managing gateway configuration
from both global (~/.capgate/config.yaml) and local (capgate.yaml)
sources, or from one explicit file.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

BACKEND_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class ConfigError(Exception):
    """Raised when there's a configuration error."""

    pass


def validate_backend_id(backend_id: str) -> str:
    """Return ``backend_id`` unchanged, or raise ``ValueError`` if it can't namespace a path."""
    if not isinstance(backend_id, str) or not BACKEND_ID_PATTERN.match(backend_id):
        raise ValueError(
            f"invalid backend id {backend_id!r}: use letters, digits, '.', '_' or '-', "
            "starting with a letter or digit"
        )
    return backend_id


class ServerConfig(BaseModel):
    """Configuration for the HTTP surface."""

    host: str = "127.0.0.1"
    port: int = 8000
    title: str = "capgate"
    route_prefix: str = "/tools"
    discovery_path: str = "/openapi.json"
    health_path: str = "/health"
    admin_enabled: bool = True

    @field_validator("route_prefix", "discovery_path", "health_path")
    @classmethod
    def _absolute_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"path must start with '/': {value!r}")
        return value.rstrip("/") or "/"


class InvocationConfig(BaseModel):
    """Defaults applied to every routed call."""

    default_timeout: float = Field(default=30.0, gt=0)
    max_concurrency: int = Field(default=8, ge=1)
    overload_wait: float = Field(default=0.25, ge=0)


class ReconnectConfig(BaseModel):
    """Connection, probing and backoff bounds for backend sessions."""

    connect_timeout: float = Field(default=10.0, gt=0)
    initial_backoff: float = Field(default=0.5, gt=0)
    max_backoff: float = Field(default=30.0, gt=0)
    probe_interval: float = Field(default=2.0, gt=0)
    probe_failures: int = Field(default=3, ge=1)
    refresh_interval: float = Field(default=60.0, ge=0)  # 0 disables periodic re-discovery

    @model_validator(mode="after")
    def _ordered_backoff(self) -> "ReconnectConfig":
        if self.max_backoff < self.initial_backoff:
            raise ValueError("max_backoff must be >= initial_backoff")
        return self


class BackendConfig(BaseModel):
    """Configuration for a single backend (stdio command or HTTP URL)."""

    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    request_timeout: float = Field(default=300.0, gt=0)
    enabled: bool = True
    max_concurrency: Optional[int] = Field(default=None, ge=1)
    default_timeout: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _one_address(self) -> "BackendConfig":
        if bool(self.command) == bool(self.url):
            raise ValueError("a backend needs exactly one of 'command' or 'url'")
        return self

    @property
    def address(self) -> str:
        if self.url:
            return self.url
        return " ".join([self.command or ""] + self.args)


class GatewayConfig(BaseModel):
    """Complete capgate configuration schema."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    invocation: InvocationConfig = Field(default_factory=InvocationConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    backends: Dict[str, BackendConfig] = Field(default_factory=dict)

    @field_validator("backends")
    @classmethod
    def _valid_ids(cls, value: Dict[str, BackendConfig]) -> Dict[str, BackendConfig]:
        for backend_id in value:
            validate_backend_id(backend_id)
        return value

    def enabled_backends(self) -> Dict[str, BackendConfig]:
        return {name: cfg for name, cfg in self.backends.items() if cfg.enabled}

    def concurrency_for(self, backend: BackendConfig) -> int:
        return backend.max_concurrency or self.invocation.max_concurrency

    def timeout_for(self, backend: BackendConfig) -> float:
        return backend.default_timeout or self.invocation.default_timeout


class Config:
    """
    capgate configuration manager.

    Handles loading, merging, and validating configuration from:
    - Global: ~/.capgate/config.yaml
    - Local: capgate.yaml (nearest one walking up from the cwd)
    - Explicit: a path given on the command line or in CAPGATE_CONFIG

    Local configuration overrides global configuration. An explicit file
    replaces the local one.

    Example:
        >>> config = Config.load()
        >>> config.merged.server.port
        8000
    """

    GLOBAL_CONFIG_DIR = Path.home() / ".capgate"
    LOCAL_CONFIG_NAME = "capgate.yaml"
    ENV_VAR = "CAPGATE_CONFIG"

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
        source: Optional[Path] = None,
    ):
        """
        Initialize Config.

        Args:
            global_config: Global configuration dictionary.
            local_config: Local (project) configuration dictionary.
            source: File the local configuration came from, if any.
        """
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self.source = source
        self._merged: Optional[GatewayConfig] = None

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """
        Load configuration from ``path`` or the default locations.

        Returns:
            Config instance with loaded configuration.
        """
        if path is None and os.environ.get(cls.ENV_VAR):
            path = Path(os.environ[cls.ENV_VAR])
        if path is not None and not Path(path).exists():
            raise ConfigError(f"Config file not found: {path}")

        local_path = Path(path) if path is not None else cls._find_local_config()
        global_config = cls._load_yaml(cls.GLOBAL_CONFIG_DIR / "config.yaml")
        local_config = cls._load_yaml(local_path)
        return cls(global_config=global_config, local_config=local_config, source=local_path)

    @classmethod
    def _load_yaml(cls, path: Optional[Path]) -> Dict[str, Any]:
        """Load YAML file if it exists."""
        if path is None or not path.exists():
            return {}

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}")
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return data

    @classmethod
    def _find_local_config(cls) -> Optional[Path]:
        """Find the local config file by walking up the directory tree."""
        current = Path.cwd()
        while current != current.parent:
            config_path = current / cls.LOCAL_CONFIG_NAME
            if config_path.exists():
                return config_path
            current = current.parent
        return None

    def get_merged_config(self) -> Dict[str, Any]:
        """Get the merged configuration as a dictionary, with ${VAR} expanded."""
        merged = self._deep_merge(self._global_config.copy(), self._local_config)
        return self._expand_env(merged)

    @property
    def merged(self) -> GatewayConfig:
        """Get the validated merged configuration."""
        if self._merged is None:
            try:
                self._merged = GatewayConfig(**self.get_merged_config())
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}")
        return self._merged

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _expand_env(self, value: Any) -> Any:
        if isinstance(value, str):
            return os.path.expandvars(value)
        if isinstance(value, dict):
            return {k: self._expand_env(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._expand_env(v) for v in value]
        return value

    @classmethod
    def write_example(cls, path: Path) -> Path:
        """Write a starter local configuration file unless one exists."""
        if path.exists():
            return path

        example = {
            "server": {"host": "127.0.0.1", "port": 8000},
            "invocation": {"default_timeout": 30.0, "max_concurrency": 8},
            "reconnect": {"initial_backoff": 0.5, "max_backoff": 30.0},
            "backends": {
                "filesystem": {
                    "command": "npx",
                    "args": ["-y", "@modelcontextprotocol/server-filesystem", "."],
                },
                "search": {
                    "url": "http://localhost:9000/mcp",
                    "headers": {"Authorization": "Bearer ${SEARCH_TOKEN}"},
                    "enabled": False,
                },
            },
        }

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(example, f, default_flow_style=False, sort_keys=False)
        return path

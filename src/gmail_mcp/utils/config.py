"""
Configuration management for the Gmail MCP bridge.

Provides hierarchical configuration loading with validation using Pydantic.
TOML files are layered in order and environment variables
(``GMAIL_MCP_*``, plus the conventional ``COMPOSIO_*`` and ``MCP_PORT``)
override them.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import toml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gmail_mcp.core.exceptions import ConfigError
from gmail_mcp.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_FILES = [
    "/etc/gmail-mcp/config.toml",
    "~/.config/gmail-mcp/config.toml",
    "./.gmail-mcp.toml",
]


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="File logging level")
    console_level: str = Field(default="INFO", description="Console logging level")
    format_type: str = Field(default="text", description="Log format (text/json)")
    file: Optional[str] = Field(default=None, description="Log file path")
    enable_rich: bool = Field(default=True, description="Enable Rich console output")
    max_bytes: int = Field(default=10 * 1024 * 1024, description="Max log file size")
    backup_count: int = Field(default=5, description="Number of backup files")
    suppress_http: bool = Field(default=True, description="Suppress HTTP client logging")

    @field_validator("level", "console_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate logging level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("format_type")
    @classmethod
    def validate_format_type(cls, v: str) -> str:
        """Validate format type."""
        if v not in ["text", "json"]:
            raise ValueError(f"Invalid format type: {v}")
        return v


class CacheConfig(BaseModel):
    """Expiring resource cache configuration."""

    ttl_seconds: float = Field(
        default=300.0,
        description="TTL shared by auth status and tool set entries",
    )
    single_flight: bool = Field(
        default=False,
        description="Share one in-flight fetch between concurrent misses",
    )

    @field_validator("ttl_seconds")
    @classmethod
    def validate_ttl(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Cache TTL must be positive")
        return v


class ComposioConfig(BaseModel):
    """Composio provider configuration."""

    api_key: Optional[str] = Field(
        default_factory=lambda: os.getenv("COMPOSIO_API_KEY"),
        description="Composio API key",
    )
    auth_config_id: Optional[str] = Field(
        default_factory=lambda: os.getenv("COMPOSIO_AUTH_CONFIG_ID"),
        description="Gmail auth config id from the Composio dashboard",
    )
    toolkit: str = Field(default="gmail", description="Toolkit slug to look for")
    mcp_server_url: Optional[str] = Field(
        default_factory=lambda: os.getenv("COMPOSIO_MCP_URL"),
        description="Composio-hosted MCP server URL",
    )
    request_timeout: float = Field(default=30.0, description="Upstream request timeout in seconds")

    def require(self) -> "ComposioConfig":
        """Ensure the fields needed to talk to Composio are present."""
        missing = [
            name for name in ("api_key", "auth_config_id", "mcp_server_url")
            if not getattr(self, name)
        ]
        if missing:
            raise ConfigError(
                f"Missing Composio configuration: {', '.join(missing)}",
                error_code="COMPOSIO_CONFIG",
                details={"missing": missing},
            )
        return self

    def mcp_url_for(self, connection_id: Optional[str]) -> str:
        """Upstream MCP URL, scoped to a connected account when one exists."""
        if not self.mcp_server_url:
            raise ConfigError("Composio MCP server URL is not configured", "COMPOSIO_CONFIG")
        if not connection_id:
            return self.mcp_server_url

        parts = urlsplit(self.mcp_server_url)
        query = [(k, v) for k, v in parse_qsl(parts.query) if k != "connected_account_id"]
        query.append(("connected_account_id", connection_id))
        return urlunsplit(parts._replace(query=urlencode(query)))


class ServerConfig(BaseModel):
    """MCP bridge server configuration."""

    name: str = Field(default="Gmail MCP Server", description="Advertised server name")
    version: str = Field(default="1.0.0", description="Advertised server version")
    host: str = Field(default="127.0.0.1", description="Bind host")
    port: int = Field(
        default_factory=lambda: int(os.getenv("MCP_PORT", "3001")),
        description="Bind port",
    )
    http_path: str = Field(default="/mcp", description="JSON-RPC endpoint path")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")
    session_idle_seconds: float = Field(default=3600.0, description="Sessions unseen for this long are dropped")
    max_sessions: int = Field(default=1000, description="Most MCP sessions tracked at once")

    @field_validator("http_path")
    @classmethod
    def validate_http_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("http_path must start with '/'")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 <= v <= 65535:
            raise ValueError(f"Invalid port: {v}")
        return v

    @field_validator("session_idle_seconds", "max_sessions")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v


class Config(BaseSettings):
    """Main configuration class."""

    debug: bool = Field(default=False, description="Enable debug mode")
    config_dir: str = Field(
        default="~/.config/gmail-mcp",
        description="Configuration directory",
    )
    default_user_id: str = Field(default="default", description="User id when none is supplied")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    composio: ComposioConfig = Field(default_factory=ComposioConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    model_config = SettingsConfigDict(
        env_prefix="GMAIL_MCP_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    def get_config_dir(self) -> Path:
        """Get configuration directory path."""
        return Path(os.path.expanduser(self.config_dir))

    def get_log_file(self) -> Optional[Path]:
        """Get log file path."""
        if self.logging.file:
            log_path = Path(os.path.expanduser(self.logging.file))
            if not log_path.is_absolute():
                log_path = self.get_config_dir() / log_path
            return log_path
        return None

    def redacted(self) -> Dict[str, Any]:
        """Configuration as a dict with secrets masked."""
        data = self.model_dump()
        api_key = data["composio"].get("api_key")
        if api_key:
            data["composio"]["api_key"] = api_key[:4] + "…" if len(api_key) > 4 else "…"
        return data


def _merge(base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


class ConfigManager:
    """Configuration manager with hierarchical loading."""

    def __init__(self):
        self._config: Optional[Config] = None

    def load_config(
        self,
        config_files: Optional[List[Union[str, Path]]] = None,
        **overrides: Any,
    ) -> Config:
        """
        Load configuration from multiple sources.

        Args:
            config_files: List of configuration files to load, lowest priority first
            **overrides: Configuration overrides

        Returns:
            Loaded configuration
        """
        if self._config is not None:
            return self._config

        if config_files is None:
            config_files = DEFAULT_CONFIG_FILES

        config_data: Dict[str, Any] = {}
        for config_file in config_files:
            file_path = Path(os.path.expanduser(str(config_file)))
            if not file_path.exists():
                continue
            try:
                _merge(config_data, toml.load(file_path))
                logger.debug(f"Loaded configuration from {file_path}")
            except (OSError, toml.TomlDecodeError) as e:
                logger.warning(f"Failed to load config from {file_path}: {e}")

        _merge(config_data, overrides)

        self._config = Config(**config_data)
        return self._config

    def get_config(self) -> Config:
        """Get current configuration."""
        if self._config is None:
            return self.load_config()
        return self._config

    def reload_config(self, **overrides: Any) -> Config:
        """Reload configuration."""
        self._config = None
        return self.load_config(**overrides)


_config_manager = ConfigManager()

load_config = _config_manager.load_config
get_config = _config_manager.get_config
reload_config = _config_manager.reload_config

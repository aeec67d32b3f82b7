"""Configuration management for Termpilot."""

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.termpilot/config.yaml").expanduser()
DEFAULT_SERVERS_PATH = Path("~/.termpilot/mcp-servers.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "termpilot.yaml"


def _default_shell() -> str:
    if os.name == "nt":
        return os.environ.get("COMSPEC", "cmd.exe")
    return os.environ.get("SHELL", "/bin/sh")


class AgentConfig(BaseModel):
    """Agent loop limits."""

    max_rounds: int = Field(default=50, ge=10, le=200)
    timeout_seconds: float = Field(default=600.0, gt=0)
    repeat_threshold: int = Field(default=3, ge=2)
    failure_window: int = Field(default=4, ge=1)
    max_failure_rate: float = Field(default=0.5, ge=0.0, le=1.0)


class MCPConfig(BaseModel):
    """MCP client manager configuration."""

    default_timeout_ms: int = Field(default=30000, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    history_capacity: int = Field(default=1000, ge=1)
    retry_permanent_errors: bool = False
    servers_path: str = str(DEFAULT_SERVERS_PATH)
    client_name: str = "termpilot"
    client_version: str = "0.1.0"
    protocol_version: str = "2024-11-05"


class TerminalConfig(BaseModel):
    """Local terminal backend configuration."""

    shell: str = Field(default_factory=_default_shell)
    command_timeout: int = 30
    max_buffer_lines: int = 500
    async_task_timeout: int = 300


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class Config(BaseSettings):
    """Main configuration for Termpilot."""

    agent: AgentConfig = Field(default_factory=AgentConfig)
    mcp: MCPConfig = Field(default_factory=MCPConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="TERMPILOT_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration; pydantic-settings applies env overrides."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_servers_path(self) -> Path:
        """Expand the MCP server list path."""
        return Path(self.mcp.servers_path).expanduser()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config

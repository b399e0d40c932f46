"""Configuration management for Vibey."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.vibey/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "vibey.yaml"


class ModelConfig(BaseModel):
    """LLM backend configuration."""

    provider: Literal["ollama", "openai-compatible"] = "ollama"
    model: str = "Qwen3-coder-roo-config:latest"
    base_url: str = ""
    api_key: str = ""
    temperature: float | None = None
    timeout: float = 300.0


class AgentConfig(BaseModel):
    """Orchestrator loop configuration."""

    max_turns: int = Field(default=64, ge=1)
    system_prompt_template: str = "system_prompt.md"


class McpServerConfig(BaseModel):
    """Launch configuration for one capability server.

    Immutable: a changed entry is handled by disconnecting and reconnecting
    the server, never by mutating a live connection.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    timeout: float | None = None
    auto_reconnect: bool = Field(
        default=False,
        validation_alias=AliasChoices("auto_reconnect", "autoReconnect"),
    )


class McpConfig(BaseModel):
    """Capability server client configuration."""

    servers: dict[str, McpServerConfig] = Field(default_factory=dict)
    builtin_servers: dict[str, McpServerConfig] = Field(default_factory=dict)
    default_timeout: float = 30.0
    reconnect_delay: float = 5.0
    max_reconnect_attempts: int = 3

    def target_servers(self) -> dict[str, McpServerConfig]:
        """Configured servers merged over built-in ones (configured entries win)."""
        merged = dict(self.builtin_servers)
        merged.update(self.servers)
        return merged


class ShellToolConfig(BaseModel):
    """run_command tool configuration."""

    timeout: int = 30
    blocked: list[str] = [
        "rm -rf /",
        "mkfs",
        ":(){:|:&};:",
    ]


class ToolsConfig(BaseModel):
    """Local tools configuration."""

    enabled: list[str] = [
        "read_file",
        "write_file",
        "list_directory",
        "run_command",
    ]
    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)


class WorkspaceConfig(BaseModel):
    """Workspace root configuration."""

    path: str = "."


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Vibey."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    mcp: McpConfig = Field(default_factory=McpConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="VIBEY_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
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
        """Load configuration from the default YAML location (local file first)."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_workspace_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve workspace path, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.workspace.path).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()


# Process-wide instance for the CLI entry point; services take config by argument.
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

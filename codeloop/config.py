"""Configuration management for codeloop."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_HOME_DIR = Path("~/.codeloop").expanduser()
DEFAULT_CONFIG_PATH = DEFAULT_HOME_DIR / "config.yaml"
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 16384
    api_key: str = ""
    base_url: str = ""
    request_timeout: float = 120.0


class RetryConfig(BaseModel):
    """Retry middleware configuration."""

    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 60000
    backoff_multiplier: float = 2.0
    retryable_status_codes: list[int] = [429, 500, 502, 503, 504]
    network_error_codes: list[str] = [
        "ECONNRESET",
        "ETIMEDOUT",
        "ECONNREFUSED",
        "EPIPE",
    ]


class RateLimitConfig(BaseModel):
    """Header-driven request throttling."""

    enabled: bool = True
    throttle_buffer_ms: int = 1000


class QueueConfig(BaseModel):
    """Long-retry request queue configuration."""

    enabled: bool = True
    path: str = str(DEFAULT_HOME_DIR / "request-queue")
    max_size: int = 100
    retry_intervals_ms: list[int] = [60000, 120000, 300000, 600000, 900000, 1200000, 1500000, 1800000]
    max_retry_duration_seconds: float = 1800.0
    processor_interval_seconds: float = 30.0


class CacheConfig(BaseModel):
    """Response cache configuration."""

    enabled: bool = True
    ttl_seconds: float = 3600.0
    max_entries: int = 100
    path: str = str(DEFAULT_HOME_DIR / "cache")
    replay_chunk_delay_ms: int = 5


class JournalConfig(BaseModel):
    """Resumable stream journal configuration."""

    enabled: bool = True
    path: str = str(DEFAULT_HOME_DIR / "streams")
    flush_every: int = 50
    max_age_seconds: float = 300.0


class AgentConfig(BaseModel):
    """Agent loop configuration."""

    max_iterations: int = Field(default=50, ge=1, le=250)
    system_prompt: str = ""
    middleware_logging: bool = False


class ShellToolConfig(BaseModel):
    """Shell tool configuration."""

    timeout: int = 120
    max_timeout: int = 600
    max_output_chars: int = 30000
    background_max_lines: int = 500


class ApprovalConfig(BaseModel):
    """Shell command approval configuration."""

    path: str = str(DEFAULT_HOME_DIR / "bash-approval.json")
    yolo: bool = False
    allow_prefixes: list[str] = []
    wait_timeout_seconds: float = 600.0
    poll_interval_seconds: float = 0.1
    allow_once_ttl_seconds: float = 600.0


class WorkspaceConfig(BaseModel):
    """Workspace root configuration."""

    path: str = "."


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class Config(BaseSettings):
    """Main configuration for codeloop."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    journal: JournalConfig = Field(default_factory=JournalConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    shell: ShellToolConfig = Field(default_factory=ShellToolConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="CODELOOP_",
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

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration; environment variables are applied by pydantic-settings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def resolved_workspace_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve workspace path, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.workspace.path).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()


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

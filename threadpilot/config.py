"""Configuration management for threadpilot."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from threadpilot.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.threadpilot/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.threadpilot/threads.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class AgentConfig(BaseModel):
    """Agent loop limits, retry policy and streaming cadence."""

    chat_mode: Literal["normal", "gather", "agent"] = "agent"
    max_iterations: int = 20
    max_files_read_per_query: int = 10
    chat_retries: int = 3
    initial_retry_delay_ms: int = 1000
    max_retry_delay_ms: int = 5000
    local_retry_delay_ms: int = 500
    local_providers: list[str] = [
        "ollama",
        "vLLM",
        "lmStudio",
        "openAICompatible",
        "liteLLM",
    ]
    max_fallback_models: int = 10
    fallback_delay_ms: int = 500
    stream_frame_interval: float = 1 / 60


class ApprovalConfig(BaseModel):
    """Tool approval policy."""

    auto_approve: dict[str, bool] = Field(
        default_factory=lambda: {"edits": False, "terminal": False, "MCP tools": False}
    )
    yolo_mode: bool = False
    risk_threshold: float = 0.2
    confidence_threshold: float = 0.7
    notify_threshold: float = 0.1


class CheckpointConfig(BaseModel):
    """Checkpoint retention limits."""

    max_per_thread: int = 50
    max_total_size_mb: float = 100.0


class CacheConfig(BaseModel):
    """Cache sizes and lifetimes."""

    file_read_max_entries: int = 100
    message_prep_max_entries: int = 50
    message_prep_ttl: float = 5.0
    plan_cache_ttl: float = 0.1


class ModelsConfig(BaseModel):
    """Ordered model list used by the configured router."""

    class ModelEntry(BaseModel):
        """A routable model."""

        provider: str
        model: str

    allowed: list[ModelEntry] = Field(default_factory=list)


class PersistenceConfig(BaseModel):
    """Thread storage configuration."""

    path: str = str(DEFAULT_DB_PATH)
    save_debounce_seconds: float = 0.5


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for threadpilot."""

    agent: AgentConfig = Field(default_factory=AgentConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    checkpoints: CheckpointConfig = Field(default_factory=CheckpointConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="THREADPILOT_",
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
        """Load configuration from YAML file.

        Raises:
            ConfigurationError if the file is not valid YAML or holds invalid settings
        """
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must hold a mapping")

        try:
            return cls(**data)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid settings in {config_path}: {e}") from e

    @classmethod
    def load(cls) -> "Config":
        """Load configuration; env vars are applied by pydantic-settings."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


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

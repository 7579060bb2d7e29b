"""Configuration management for streamloop."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.streamloop/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"


class ModelConfig(BaseModel):
    """Model configuration."""

    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    base_url: str = "https://api.anthropic.com"
    api_key: str = ""
    anthropic_version: str = "2023-06-01"
    temperature: float = 0.7
    max_tokens: int = 16000
    stream_timeout: float = 500.0


class ToolsConfig(BaseModel):
    """Tools configuration."""

    enabled: list[str] = ["write", "read", "ask_user"]
    dispatch_mode: Literal["sequential", "concurrent"] = "concurrent"
    batch_timeout: float = 180.0
    default_timeout: float = 30.0
    serialize_same_target: bool = True
    verify_success: bool = True
    awaiting_input_tools: list[str] = ["ask_user"]


class LoopConfig(BaseModel):
    """Agent loop bounds and termination settings."""

    max_tool_cycles: int = 10
    completion_phrases: list[str] = [
        "TASK_COMPLETE",
        "TASK COMPLETE",
        "[COMPLETE]",
    ]
    confidence_threshold: float = 0.9
    max_errors: int = 10
    max_artifacts: int = 50
    cap_message: str = (
        "Stopped after reaching the maximum number of tool cycles. "
        "Work completed so far has been kept."
    )


class LoopDetectionConfig(BaseModel):
    """Stagnation detector thresholds."""

    window_iterations: int = 5
    repeat_threshold: int = 3
    failure_threshold: int = 3
    failure_streak: int = 3
    low_confidence_window: int = 3
    low_confidence_threshold: float = 0.3


class BudgetConfig(BaseModel):
    """Token budget configuration."""

    default_profile: str = "default"
    warning_ratio: float = 0.85
    profiles: dict[str, dict[str, int]] = Field(default_factory=dict)


class WorkspaceConfig(BaseModel):
    """Workspace/output root configuration."""

    path: str = "./workspace"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for streamloop."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    loop_detection: LoopDetectionConfig = Field(default_factory=LoopDetectionConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="STREAMLOOP_",
        env_file=".env",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # YAML values arrive as init kwargs; STREAMLOOP_* env vars win over them
        return env_settings, dotenv_settings, init_settings, file_secret_settings

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
        """Load configuration, preferring env vars over YAML."""
        # Pydantic-settings applies STREAMLOOP_* overrides on construction
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

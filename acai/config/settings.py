from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Self

from dotenv import load_dotenv
from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from acai.constants import CODE_TIMEOUT_CEILING_S, PROJECT_CONFIG_PATH
from acai.infra.errors import ConfigError

# Load .env once at module import; every BaseSettings subclass sees the env vars
load_dotenv()

DEFAULT_ALLOWED_COMMANDS: tuple[str, ...] = (
    "ls", "cat", "grep", "rg", "find", "git", "head", "tail", "wc", "pwd",
    "echo", "sed", "awk", "sort", "uniq", "diff", "mkdir", "touch", "cp", "mv",
    "python", "pytest", "npm", "node",
)


class PipePolicy(StrEnum):
    """How the command validator treats `|`. Chosen once per session."""

    forbid = "forbid"
    validate_stages = "validate_stages"


class ToolSettings(BaseSettings):
    """Tool execution limits and the command allow-list. Env prefix: TOOLS_."""

    model_config = SettingsConfigDict(env_prefix="TOOLS_")

    allowed_commands: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS)
    )
    pipe_policy: PipePolicy = PipePolicy.forbid
    max_tokens: int = Field(8000, gt=0)
    max_tokens_per_tool: dict[str, int] = Field(default_factory=dict)
    bash_timeout_ms: int = Field(90_000, gt=0)
    code_timeout_s: int = Field(5, ge=1, le=CODE_TIMEOUT_CEILING_S)
    code_timeout_max_s: int = Field(60, ge=1, le=CODE_TIMEOUT_CEILING_S)
    max_buffer_bytes: int = Field(1_000_000, gt=0)

    @field_validator("allowed_commands")
    @classmethod
    def _validate_allowed_commands(cls, v: list[str]) -> list[str]:
        for name in v:
            if not name or name != name.strip() or any(c.isspace() for c in name):
                raise ValueError(
                    f"TOOLS_ALLOWED_COMMANDS entries must be bare program names (got {name!r})"
                )
        return v

    @field_validator("max_tokens_per_tool")
    @classmethod
    def _validate_per_tool(cls, v: dict[str, int]) -> dict[str, int]:
        for tool_name, limit in v.items():
            if limit <= 0:
                raise ValueError(
                    f"max_tokens_per_tool[{tool_name!r}] must be > 0, got {limit}"
                )
        return v

    @model_validator(mode="after")
    def _validate(self) -> Self:
        if self.code_timeout_s > self.code_timeout_max_s:
            raise ValueError(
                f"code_timeout_s ({self.code_timeout_s}) must not exceed "
                f"code_timeout_max_s ({self.code_timeout_max_s})"
            )
        return self

    def token_limit_for(self, tool_name: str) -> int:
        """Token ceiling for one tool's output, falling back to max_tokens."""
        return self.max_tokens_per_tool.get(tool_name, self.max_tokens)


class ApprovalSettings(BaseSettings):
    """Human approval of mutating tool calls. Env prefix: APPROVAL_."""

    model_config = SettingsConfigDict(env_prefix="APPROVAL_")

    interactive: bool = True
    first_prompt_delay_s: float = Field(0.15, ge=0.0, le=5.0)


class OpenAISettings(BaseSettings):
    """OpenAI API settings. Env vars prefixed with OPENAI_."""

    model_config = SettingsConfigDict(env_prefix="OPENAI_")

    api_key: str = ""
    model: str = "gpt-4o-mini"
    base_url: str | None = None


class RepairSettings(BaseSettings):
    """Auxiliary model used to repair malformed tool arguments. Env prefix: REPAIR_."""

    model_config = SettingsConfigDict(env_prefix="REPAIR_")

    enabled: bool = True
    model: str = "gpt-4o-mini"
    temperature: float = Field(0.0, ge=0.0, le=1.0)


class Settings(BaseSettings):
    """Root settings composing all sub-configurations.

    Sources, highest priority first: init kwargs, environment, .env,
    the project file (.acai/acai.json relative to the current directory).
    """

    model_config = SettingsConfigDict(
        extra="ignore",
        json_file=PROJECT_CONFIG_PATH,
        json_file_encoding="utf-8",
    )

    tools: ToolSettings = Field(default_factory=ToolSettings)
    approval: ApprovalSettings = Field(default_factory=ApprovalSettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    repair: RepairSettings = Field(default_factory=RepairSettings)
    workspace_dir: Path = Field(default_factory=Path.cwd)
    allowed_dirs: list[Path] = Field(default_factory=list)
    max_steps: int = Field(25, gt=0, le=200)
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)} (got '{v}')")
        return v.upper()

    def allowed_roots(self) -> tuple[Path, ...]:
        """Workspace first, then extra allowed directories, all absolute."""
        roots: list[Path] = []
        for p in (self.workspace_dir, *self.allowed_dirs):
            resolved = p.expanduser().resolve()
            if resolved not in roots:
                roots.append(resolved)
        return tuple(roots)


def get_settings(**overrides: object) -> Settings:
    """Load and validate settings. Raises ConfigError on invalid values."""
    try:
        settings = Settings(**overrides)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration:\n{e}") from e
    if not settings.workspace_dir.expanduser().is_dir():
        raise ConfigError(f"Workspace directory does not exist: {settings.workspace_dir}")
    return settings

"""Configuration management for Work Item Bridge using Pydantic.

This module provides type-safe configuration models for the Rally source,
the Azure DevOps target, performance tuning, migration options, workflow
transition tables, state, and logging.
"""

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _validate_http_url(v: str) -> str:
    if not v.startswith(("http://", "https://")):
        raise ValueError("URL must start with http:// or https://")
    return v.rstrip("/")


def _validate_not_empty(v: str, name: str) -> str:
    if not v or v.strip() == "":
        raise ValueError(f"{name} cannot be empty")
    return v


class PathConfig(BaseModel):
    """Configuration for file paths."""

    mapping_file: str = Field(
        default="config/field_mapping.yaml",
        description="Field mapping configuration (YAML or JSON)",
    )
    report_dir: str = Field(default="reports", description="Directory for migration reports")


class RallyConfig(BaseModel):
    """Configuration for the Rally source instance."""

    url: str = Field(default="https://rally1.rallydev.com", description="Rally server URL")
    api_key: str = Field(..., description="Rally API key (sent as ZSESSIONID)")
    workspace: str = Field(..., description="Workspace ObjectID")
    project: str | None = Field(default=None, description="Project ObjectID to scope queries")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    timeout: int = Field(default=60, ge=1, le=600, description="API request timeout in seconds")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate and normalize URL."""
        return _validate_http_url(v)

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: str) -> str:
        """Validate API key is not empty."""
        return _validate_not_empty(v, "API key")


class AdoConfig(BaseModel):
    """Configuration for the Azure DevOps target instance."""

    url: str = Field(default="https://dev.azure.com", description="Azure DevOps server URL")
    organization: str = Field(..., description="Azure DevOps organization")
    project: str = Field(..., description="Target project name")
    token: str = Field(..., description="Personal access token")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    timeout: int = Field(default=60, ge=1, le=600, description="API request timeout in seconds")
    api_version: str = Field(default="7.1", description="REST API version")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate and normalize URL."""
        return _validate_http_url(v)

    @field_validator("token")
    @classmethod
    def validate_token(cls, v: str) -> str:
        """Validate token is not empty."""
        return _validate_not_empty(v, "Token")


class PerformanceConfig(BaseModel):
    """Performance tuning configuration."""

    batch_size: int = Field(default=100, ge=1, le=1000, description="Records per batch")
    max_concurrent: int = Field(
        default=8, ge=1, le=64, description="Maximum records migrated concurrently"
    )
    existence_check_concurrency: int = Field(
        default=8, ge=1, le=64, description="Maximum concurrent existence pre-checks"
    )
    attachment_concurrency: int = Field(
        default=3, ge=1, le=16, description="Maximum concurrent attachment uploads per record"
    )
    inter_batch_delay: float = Field(
        default=0.1, ge=0.0, le=60.0, description="Seconds to wait between batches"
    )
    pause_poll_interval: float = Field(
        default=0.5, ge=0.01, le=10.0, description="Seconds between checks while paused"
    )
    max_retries: int = Field(
        default=3, ge=0, le=10, description="Record-level retries for transport errors"
    )
    retry_delay: float = Field(
        default=2.0,
        ge=0.0,
        le=120.0,
        description="Base retry delay in seconds, multiplied by the attempt number",
    )
    connection_retry_delay: float = Field(
        default=3.0, ge=0.0, le=120.0, description="Retry delay in seconds after a network error"
    )
    rate_limit: int = Field(default=20, ge=1, le=200, description="Requests per second limit")
    http_max_connections: int = Field(
        default=50, ge=1, le=200, description="Maximum number of connections in the pool"
    )
    http_max_keepalive_connections: int = Field(
        default=20, ge=1, le=100, description="Maximum number of keepalive connections"
    )
    page_size: int = Field(default=200, ge=1, le=2000, description="Rally query page size")


class MigrationOptions(BaseModel):
    """Behavioral switches for a migration run."""

    dry_run: bool = Field(default=False, description="Resolve and transform without writing")
    enable_difference_patch: bool = Field(
        default=True, description="Patch fields that differ on records that already exist"
    )
    bypass_rules: bool = Field(
        default=False,
        description="Send bypassRules with post-creation patches (needed for historical dates)",
    )
    migrate_parents: bool = Field(default=True, description="Create and link parent records")
    migrate_children: bool = Field(default=True, description="Create and link child records")
    migrate_test_cases: bool = Field(
        default=True, description="Create and link test cases of stories and defects"
    )
    migrate_comments: bool = Field(default=True, description="Copy discussion posts")
    migrate_attachments: bool = Field(default=True, description="Copy attachments")
    max_hierarchy_depth: int = Field(
        default=10, ge=1, le=100, description="Maximum parent/child recursion depth"
    )


class WorkflowConfig(BaseModel):
    """Workflow transition tables per target platform.

    Each table maps a desired state to the ordered list of states that must
    be applied to reach it. States without an entry are set directly.
    """

    platform: str = Field(default="ado", description="Transition table to use")
    initial_state: str = Field(default="New", description="Mandatory state at creation")
    platforms: dict[str, dict[str, list[str]]] = Field(
        default_factory=lambda: {
            "ado": {
                "Closed": ["Active", "Closed"],
                "Resolved": ["Active", "Resolved"],
                "Removed": ["Removed"],
            }
        },
        description="Desired state -> intermediate path, per platform",
    )

    @model_validator(mode="after")
    def validate_platform(self) -> "WorkflowConfig":
        """Ensure the selected platform has a transition table."""
        if self.platform not in self.platforms:
            raise ValueError(
                f"Unknown workflow platform '{self.platform}'. "
                f"Available: {', '.join(sorted(self.platforms)) or 'none'}"
            )
        for desired, steps in self.platforms[self.platform].items():
            if not steps:
                raise ValueError(f"Transition path for '{desired}' cannot be empty")
        return self

    @property
    def transitions(self) -> dict[str, list[str]]:
        """Transition table for the selected platform."""
        return self.platforms[self.platform]


class StateConfig(BaseModel):
    """Checkpoint configuration."""

    checkpoint_path: str = Field(
        default=".workitem-bridge/checkpoint.json", description="Path to checkpoint file"
    )
    resume: bool = Field(default=False, description="Resume from the last checkpoint")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="WARNING",
        description="Console log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    file_level: str = Field(
        default="DEBUG",
        description="File log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    format: str = Field(default="json", description="Log format (json or console)")
    file: str | None = Field(default="logs/migration.log", description="Log file path")
    disable_progress: bool = Field(
        default=False, description="Disable live progress display (useful for CI/logging)"
    )
    log_payloads: bool = Field(
        default=False,
        description=(
            "Enable request/response payload logging at DEBUG level. "
            "WARNING: May log sensitive data (tokens will be redacted)."
        ),
    )
    max_payload_size: int = Field(
        default=10000,
        ge=100,
        le=1000000,
        description="Maximum payload size (characters) to log. Larger payloads will be truncated.",
    )

    @field_validator("level", "file_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["json", "console"]
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Log format must be one of: {', '.join(valid_formats)}")
        return v_lower


class MigrationConfig(BaseSettings):
    """Main migration configuration."""

    model_config = SettingsConfigDict(
        env_prefix="WORKITEM_BRIDGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    source: RallyConfig = Field(..., description="Rally source configuration")
    target: AdoConfig = Field(..., description="Azure DevOps target configuration")

    paths: PathConfig = Field(default_factory=PathConfig, description="Path configuration")
    performance: PerformanceConfig = Field(
        default_factory=PerformanceConfig, description="Performance configuration"
    )
    options: MigrationOptions = Field(
        default_factory=MigrationOptions, description="Migration options"
    )
    workflow: WorkflowConfig = Field(
        default_factory=WorkflowConfig, description="Workflow transition configuration"
    )
    state: StateConfig = Field(default_factory=StateConfig, description="State configuration")
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )


def load_config_from_yaml(config_path: str | Path) -> MigrationConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        MigrationConfig: Loaded configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is invalid
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, encoding="utf-8") as f:
        config_data = yaml.safe_load(f)

    if not config_data:
        raise ValueError(f"Empty configuration file: {config_path}")

    config_data = _expand_env_vars(config_data)

    return MigrationConfig(**config_data)


def _expand_env_vars(data):
    """Recursively expand ``${VAR_NAME}`` references in config values.

    Raises:
        ValueError: If a referenced environment variable is not set
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):

        def _replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ValueError(
                    f"Environment variable '{var_name}' not found. "
                    f"Please set it in your environment or .env file."
                )
            return env_value

        return _ENV_PATTERN.sub(_replace, data)
    else:
        return data

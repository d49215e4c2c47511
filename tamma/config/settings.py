"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for every part of the engine:
workflow scheduling, retry policy, escalation, notification channels, the
event store, quality gates and the API server. Settings are read once when
the engine is wired together; components receive plain values (for example
an immutable ``RetryPolicy``) and never consult configuration mid-execution.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tamma.enums import ChannelType
from tamma.exceptions import ConfigurationError

DEFAULT_GATE_ORDER = ["build", "test", "static-analysis", "security"]


class WorkflowConfig(BaseModel):
    """Workflow scheduling and suspension-point configuration."""

    max_concurrent_workflows: int = Field(
        default=4, ge=1, le=100, description="Maximum instances doing work at the same time"
    )
    plan_approval_timeout: float | None = Field(
        default=None, gt=0, description="Seconds to wait for plan approval (None waits indefinitely)"
    )
    merge_approval_timeout: float | None = Field(
        default=None, gt=0, description="Seconds to wait for merge approval (None waits indefinitely)"
    )
    call_timeout: float = Field(
        default=300.0, gt=0, description="Per-call timeout for AI provider and Git platform calls"
    )
    branch_prefix: str = Field(default="tamma/issue-", description="Prefix for implementation branches")


class RetryConfig(BaseModel):
    """Retry policy for quality gates and other retryable actions."""

    max_attempts: int = Field(default=3, ge=1, le=10, description="Attempts before escalation")
    backoff_base: float = Field(default=2.0, ge=0.0, description="Delay in seconds before the first retry")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Growth factor between retries")
    reset_on_success: bool = Field(default=True, description="Reset the counter when an action succeeds")
    budget_scope: Literal["per_action", "cumulative"] = Field(
        default="per_action",
        description="Count retries per (instance, action) or across all actions of an instance",
    )


class EscalationConfig(BaseModel):
    """Escalation protocol configuration."""

    resolution_timeout: float | None = Field(
        default=None, gt=0, description="Seconds to wait for resolution (None blocks indefinitely)"
    )
    on_timeout: Literal["abort", "remain_blocked"] = Field(
        default="remain_blocked", description="What the workflow does when resolution times out"
    )
    rate_limit_per_minute: int = Field(
        default=5, ge=1, description="Notifications per minute per trigger reason type"
    )
    notification_attempts: int = Field(default=3, ge=1, le=10, description="Delivery attempts per channel")
    notification_backoff_factor: float = Field(default=2.0, ge=0.0, description="Backoff base between attempts")
    channels: list[ChannelType] = Field(
        default_factory=lambda: [ChannelType.CLI], description="Channels used for escalation alerts"
    )
    operator_channels: list[ChannelType] = Field(
        default_factory=lambda: [ChannelType.CLI, ChannelType.WEBHOOK],
        description="Channels used for fatal operator alerts that bypass workflow escalation",
    )
    state_directory: str = Field(default=".tamma/escalations", description="Directory for escalation records")


class WebhookConfig(BaseModel):
    """Webhook notification channel."""

    url: str = Field(..., description="Endpoint receiving JSON alerts")
    headers: dict[str, str] = Field(default_factory=dict)
    timeout: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def validate_url(self) -> WebhookConfig:
        if not (self.url.startswith("http://") or self.url.startswith("https://")):
            raise ValueError(f"webhook url must start with http:// or https://, got: {self.url}")
        return self


class EmailConfig(BaseModel):
    """SMTP email notification channel."""

    smtp_host: str
    smtp_port: int = Field(default=587, ge=1, le=65535)
    use_tls: bool = True
    username: str | None = None
    password: SecretStr | None = None
    sender: str
    recipients: list[str] = Field(..., min_length=1)
    timeout: float = Field(default=10.0, gt=0)


class NotificationsConfig(BaseModel):
    """Concrete channel configuration. A channel without configuration is unavailable."""

    cli_enabled: bool = True
    webhook: WebhookConfig | None = None
    email: EmailConfig | None = None


class EventStoreConfig(BaseModel):
    """Event store backend and buffering configuration."""

    backend: Literal["memory", "file"] = Field(default="file")
    directory: str = Field(default=".tamma/events", description="Directory for the file backend")
    buffer_path: str = Field(default=".tamma/event-buffer.jsonl", description="Local durable spool file")
    flush_base_delay: float = Field(default=1.0, ge=0.0, description="First buffer flush retry delay")
    flush_max_delay: float = Field(default=60.0, gt=0, description="Upper bound for flush backoff")
    diagnostic_limit_bytes: int = Field(
        default=4096, ge=256, description="Tail of gate logs kept in each event payload"
    )


class QualityGatesConfig(BaseModel):
    """Quality gate pipeline configuration."""

    order: list[str] = Field(default_factory=lambda: list(DEFAULT_GATE_ORDER))
    security_cvss_threshold: float = Field(default=9.0, ge=0.0, le=10.0)
    ci_poll_interval: float = Field(default=15.0, ge=0.0)
    ci_timeout: float = Field(default=3600.0, gt=0)
    workspace: str = Field(default=".", description="Checkout used by the static-analysis gate")
    analyzers: list[str] | None = Field(
        default=None, description="Restrict static analysis to these analyzers (None probes all)"
    )
    analyzer_timeout: float = Field(default=600.0, gt=0)

    @model_validator(mode="after")
    def validate_order(self) -> QualityGatesConfig:
        unknown = [name for name in self.order if name not in DEFAULT_GATE_ORDER]
        if unknown:
            raise ValueError(f"Unknown quality gates: {', '.join(unknown)}")
        if len(set(self.order)) != len(self.order):
            raise ValueError("Quality gate order must not repeat a gate")
        return self


class ServerConfig(BaseModel):
    """Control and Event Query API server."""

    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)


class TammaSettings(BaseSettings):
    """Main engine settings.

    Combines all configuration sections and provides loading from YAML files
    with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="TAMMA_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    event_store: EventStoreConfig = Field(default_factory=EventStoreConfig)
    quality_gates: QualityGatesConfig = Field(default_factory=QualityGatesConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @model_validator(mode="after")
    def validate_channels(self) -> TammaSettings:
        """Escalation channels must have a concrete configuration."""
        for channel in self.escalation.channels:
            if channel == ChannelType.WEBHOOK and self.notifications.webhook is None:
                raise ValueError("escalation channel 'webhook' requires notifications.webhook")
            if channel == ChannelType.EMAIL and self.notifications.email is None:
                raise ValueError("escalation channel 'email' requires notifications.email")
            if channel == ChannelType.CLI and not self.notifications.cli_enabled:
                raise ValueError("escalation channel 'cli' requires notifications.cli_enabled")
        return self

    @classmethod
    def from_yaml(cls, config_path: str) -> TammaSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            TammaSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        YAML comment lines are left untouched.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))

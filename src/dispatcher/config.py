"""Dispatcher configuration using pydantic-settings.

This module defines the DispatcherSettings class that reads configuration
from environment variables with the DISPATCHER_ prefix. The GitLab URL,
GitLab token and database URL must be set for the dispatcher to start.
"""

from typing import Annotated, Any, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class DispatcherSettings(BaseSettings):
    """Issue dispatcher configuration from environment variables.

    All environment variables are prefixed with DISPATCHER_
    (e.g., DISPATCHER_GITLAB_TOKEN).

    Required fields (must be set via environment variables):
    - gitlab_url: Base URL of the GitLab instance
    - gitlab_token: Personal access token for the GitLab API
    - database_url: PostgreSQL connection string for the issue store
    """

    model_config = SettingsConfigDict(
        env_prefix="DISPATCHER_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # GitLab Configuration
    # -------------------------------------------------------------------------
    # Base URL of the GitLab instance, without /api/v4
    gitlab_url: str

    # Token sent as PRIVATE-TOKEN
    gitlab_token: str

    # Labels that make an issue eligible, comma-separated in the environment
    trigger_labels: Annotated[List[str], NoDecode] = ["auto-container"]

    # -------------------------------------------------------------------------
    # Polling Configuration
    # -------------------------------------------------------------------------
    poll_interval_minutes: int = 5

    # Discovery window used when nothing has been processed yet
    initial_lookback_minutes: int = 60

    # -------------------------------------------------------------------------
    # Lifecycle Configuration
    # -------------------------------------------------------------------------
    # Manage TODO / WIP / CONFIRM NEEDED / DONE / REJECT labels
    lifecycle_enabled: bool = True

    max_retry_attempts: int = 3

    # Linear backoff unit; attempt n waits n × this interval
    retry_interval_minutes: int = 30

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    database_url: str

    # Bound on the scheduling transaction
    statement_timeout_seconds: int = 10

    # -------------------------------------------------------------------------
    # Provisioning Configuration
    # -------------------------------------------------------------------------
    machines_api_url: str = "https://api.machines.dev/v1"
    machines_api_token: str = ""
    machines_app_name: str = "agent-container"
    machines_image: str = ""

    # Containers are reachable at https://{app}-{id}.{router_domain}
    router_domain: str = "containers.internal"

    readiness_timeout_seconds: int = 120

    # -------------------------------------------------------------------------
    # Delegation Configuration
    # -------------------------------------------------------------------------
    delegation_timeout_seconds: int = 30

    # Forwarded to the agent in every task payload
    target_server_url: str = ""

    # Bearer token for the container task API; empty sends none
    container_api_token: str = ""

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("gitlab_url")
    @classmethod
    def validate_gitlab_url(cls, v: str) -> str:
        """Validate that the GitLab URL is an http(s) URL."""
        if not v or not v.strip():
            raise ValueError("gitlab_url cannot be empty")
        if not v.startswith(("http://", "https://")):
            raise ValueError("gitlab_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("gitlab_token")
    @classmethod
    def validate_gitlab_token(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("gitlab_token cannot be empty")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate that database URL is not empty and has valid format."""
        if not v or not v.strip():
            raise ValueError("database_url cannot be empty")
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("trigger_labels", mode="before")
    @classmethod
    def parse_trigger_labels(cls, v: Any) -> Any:
        """Accept a comma-separated string as well as a list."""
        if isinstance(v, str):
            v = [label.strip() for label in v.split(",")]
        if isinstance(v, list):
            v = [label for label in v if label]
            if not v:
                raise ValueError("trigger_labels must name at least one label")
        return v

    @field_validator(
        "poll_interval_minutes",
        "max_retry_attempts",
        "retry_interval_minutes",
        "statement_timeout_seconds",
        "readiness_timeout_seconds",
        "delegation_timeout_seconds",
    )
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        """Validate that counts and durations are at least 1."""
        if v < 1:
            raise ValueError(f"{info.field_name} must be at least 1")
        return v

    @field_validator("initial_lookback_minutes")
    @classmethod
    def validate_lookback(cls, v: int) -> int:
        if v < 0:
            raise ValueError("initial_lookback_minutes cannot be negative")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v


def get_settings() -> DispatcherSettings:
    """Create and return a DispatcherSettings instance.

    Returns:
        DispatcherSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return DispatcherSettings()

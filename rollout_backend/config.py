"""
Configuration settings for the rollout backend.
"""
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional

from .kube_types import RolloutTimeouts


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Application
    APP_NAME: str = Field(default="rollout-backend", description="Application name")
    APP_ENV: str = Field(default="dev", description="Environment: dev|staging|prod")

    # HTTP Configuration
    HTTP_PORT: int = Field(default=9090, description="Service port")

    # Kubernetes Configuration
    K8S_NAMESPACE: str = Field(default="default", description="Kubernetes namespace")
    K8S_CONTEXT: Optional[str] = Field(default=None, description="Kubernetes context")
    K8S_IN_CLUSTER: bool = Field(default=False, description="Running in cluster")

    # Rollout Configuration
    ROLLOUT_POLL_INTERVAL_SECS: int = Field(default=3, description="Re-list interval while waiting")
    ROLLOUT_TIMEOUT_SECS: int = Field(default=300, description="Relabel/scale phase timeout")
    ROLLOUT_DELETION_TIMEOUT_SECS: int = Field(default=600, description="Pod deletion timeout")
    ROLLOUT_CREATION_TIMEOUT_SECS: int = Field(default=900, description="Pod creation timeout")
    ROLLOUT_DELETE_GRACE_PERIOD_SECS: Optional[int] = Field(default=None, description="Pod deletion grace period")
    ROLLOUT_QUARANTINE_VALUE: str = Field(default="draining", description="Partition value of a node being drained")
    ROLLOUT_CONFLICT_RETRIES: int = Field(default=5, description="Read-modify-write attempts on conflict")

    LOG_LEVEL: str = Field(default="info", description="Log level: info|debug|warning")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    def rollout_timeouts(self, poll_interval: float = 0, timeout: float = 0,
                         deletion_timeout: float = 0, creation_timeout: float = 0) -> RolloutTimeouts:
        """Build a timing budget; zero values fall back to the configured defaults."""
        return RolloutTimeouts(
            poll_interval=poll_interval or self.ROLLOUT_POLL_INTERVAL_SECS,
            phase_timeout=timeout or self.ROLLOUT_TIMEOUT_SECS,
            deletion_timeout=deletion_timeout or self.ROLLOUT_DELETION_TIMEOUT_SECS,
            creation_timeout=creation_timeout or self.ROLLOUT_CREATION_TIMEOUT_SECS,
        )


# Global settings instance
settings = Settings()

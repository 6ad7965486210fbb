"""Orchestrator configuration using pydantic-settings.

CivicFlowSettings reads environment variables with the CIVICFLOW_ prefix
(e.g. CIVICFLOW_DATABASE_URL). Every field has a default, so a bare
environment starts a development server with in-memory stores and the
rule-based agents.
"""

from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.civicflow.policy import RetryPolicy
from src.civicflow.workflow_config import WorkflowConfig


class CivicFlowSettings(BaseSettings):
    """Orchestrator configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CIVICFLOW_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; unset means in-memory workflow storage
    database_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # LLM Configuration
    # -------------------------------------------------------------------------
    llm_url: str = "http://localhost:8000/v1"
    llm_model: str = "Qwen/Qwen2.5-7B-Instruct"
    llm_api_key: str = "not-needed"

    # Use LLM-backed classifier and priority scorer instead of the rule-based ones
    use_llm_agents: bool = False

    # -------------------------------------------------------------------------
    # Workflow execution
    # -------------------------------------------------------------------------
    agent_timeout_seconds: float = 30.0
    max_attempts: int = 3
    backoff_base_delay: float = 1.0
    backoff_max_delay: float = 30.0
    max_concurrent_steps: int = 8
    dispatch_workers: int = 4
    dispatch_queue_size: int = 1000
    similarity_threshold: float = 0.7

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate the URL scheme when a database is configured."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError("database_url must start with postgresql:// or postgres://")
        return v

    @field_validator("llm_url")
    @classmethod
    def validate_llm_url(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("llm_url cannot be empty")
        if not v.startswith(("http://", "https://")):
            raise ValueError("llm_url must start with http:// or https://")
        return v

    @field_validator("agent_timeout_seconds")
    @classmethod
    def validate_agent_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("agent_timeout_seconds must be positive")
        return v

    @field_validator("max_attempts", "max_concurrent_steps", "dispatch_workers", "dispatch_queue_size")
    @classmethod
    def validate_at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("backoff_base_delay", "backoff_max_delay")
    @classmethod
    def validate_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("backoff delays cannot be negative")
        return v

    @field_validator("similarity_threshold")
    @classmethod
    def validate_similarity_threshold(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("similarity_threshold must be between 0 and 1")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @model_validator(mode="after")
    def validate_backoff_order(self) -> "CivicFlowSettings":
        if self.backoff_max_delay < self.backoff_base_delay:
            raise ValueError("backoff_max_delay must be >= backoff_base_delay")
        return self

    def default_workflow_config(self) -> WorkflowConfig:
        """Workflow config used by cities that have not installed their own."""
        return WorkflowConfig(
            similarity_threshold=self.similarity_threshold,
            retry=RetryPolicy(
                max_attempts=self.max_attempts,
                base_delay=self.backoff_base_delay,
                max_delay=self.backoff_max_delay,
            ),
        )


def get_settings() -> CivicFlowSettings:
    """Create settings from the environment.

    Raises:
        pydantic.ValidationError: If a value is invalid.
    """
    return CivicFlowSettings()

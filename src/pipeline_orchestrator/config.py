"""Configuration management for the Pipeline Orchestrator."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Orchestrator settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PIPELINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    # Execution
    shell: str = Field(default="/bin/sh", description="Shell used to run job commands")
    default_timeout: Optional[float] = Field(
        default=None, gt=0, description="Timeout in seconds for jobs that declare none"
    )
    kill_grace_period: float = Field(
        default=5.0, ge=0, description="Seconds between SIGTERM and SIGKILL when stopping a job"
    )
    max_parallel_jobs: Optional[int] = Field(
        default=None, ge=1, description="Upper bound on concurrently running jobs within a stage"
    )
    inherit_environment: bool = Field(
        default=True, description="Overlay job environment onto the orchestrator's own environment"
    )

    # Output capture
    output_limit_bytes: int = Field(
        default=1024 * 1024, ge=1, description="Maximum bytes kept per stream per job"
    )

    # Artifacts
    artifacts_dir: Path = Field(
        default=Path(".pipeline"), description="Directory where job logs and run summaries are written"
    )
    persist_artifacts: bool = Field(
        default=True, description="Write job logs and run summaries to artifacts_dir"
    )

    @property
    def parallelism_label(self) -> str:
        """Human readable parallelism limit."""
        if self.max_parallel_jobs is None:
            return "unbounded"
        return str(self.max_parallel_jobs)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

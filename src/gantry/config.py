"""Application configuration loaded from environment variables."""

from pathlib import Path

from pydantic import computed_field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Gantry configuration."""

    # Local data directory (storage, run history, scratch space)
    data_dir: str = "./.gantry"

    # Where `uses: ./...` reusable workflows and `gantry schedule` look
    workflows_dir: str = "./.github/workflows"

    # Database (empty = local SQLite in data_dir)
    database_url: str = ""

    # Blob storage for caches, artifacts and logs
    storage_backend: str = "local"  # "s3" or "local"
    storage_bucket: str = "gantry-data"
    storage_endpoint: str = "http://localhost:9000"
    aws_access_key_id: str = "minioadmin"
    aws_secret_access_key: str = "minioadmin"

    # Cache retention: entries unused for N days are evicted, LRU beyond quota
    cache_quota_bytes: int = 10 * 1024**3
    cache_retention_days: int = 7

    artifact_retention_days: int = 90

    # Timeouts
    default_job_timeout_minutes: float = 360
    cleanup_step_timeout_minutes: float = 5

    # Host capacity for concurrently running job instances (0 = unbounded)
    max_concurrent_jobs: int = 0

    # Reusable workflow nesting
    max_workflow_depth: int = 4

    default_branch: str = "main"
    default_shell: str = "bash"

    # Values exposed through the `runner` context
    runner_os: str = "Linux"
    runner_arch: str = "X64"
    runner_name: str = "gantry-local"

    # Replacement for secret values in logs
    mask_string: str = "***"

    # Cron scheduler for `on: schedule` workflows
    scheduler_enabled: bool = True

    # Logging
    log_level: str = "info"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @computed_field
    @property
    def is_local_mode(self) -> bool:
        """True when running in local mode (SQLite + filesystem storage)."""
        return not self.database_url or self.database_url.startswith("sqlite")

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).resolve()


settings = Settings()

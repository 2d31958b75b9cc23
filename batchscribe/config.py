"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Dict, Optional


class Settings(BaseSettings):
    # Artifact storage
    artifact_store: str = "memory"  # "memory", "local" or "s3"
    storage_dir: str = "/data/batchscribe"
    s3_bucket: str = ""
    aws_region: Optional[str] = None

    # Compute dispatch
    compute_backend: str = "fake"  # "fake" or "aws_batch"
    batch_job_queue: str = ""
    batch_job_definitions: Dict[str, str] = {}
    fake_polls_until_done: int = 2

    # Job lifecycle (durations in seconds)
    max_attempts: int = 3
    poll_interval: float = 15.0
    poll_jitter: float = 0.2
    job_timeout: float = 6 * 3600
    retention_window: float = 24 * 3600
    retention_sweep_interval: float = 300.0
    retry_backoff_base: float = 2.0
    retry_backoff_max: float = 60.0
    operation_timeout: float = 60.0
    completion_marker: str = "done"

    # Service
    service_port: int = 8001
    log_level: str = "INFO"
    max_upload_mb: int = 2048

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()

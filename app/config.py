"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_anon_key: str = ""

    # Service
    api_port: int = 8001
    log_level: str = "INFO"
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Step execution (simulated work duration per step, seconds)
    step_delay_min_s: float = 2.0
    step_delay_max_s: float = 5.0

    # Execution lease
    lease_ttl_seconds: int = 30
    lease_heartbeat_seconds: int = 10
    max_concurrent_jobs: int = 8

    # Client polling contract
    poll_interval_ms: int = 2000
    poll_stop_on_terminal: bool = True

    # Terminal artifacts
    default_export_formats: List[str] = ["coco", "yolo", "jsonl"]
    artifact_dir: str = ""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()

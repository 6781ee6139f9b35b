import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, model_validator

load_dotenv()


_TRUTHY_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in _TRUTHY_VALUES


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./orchestrator.db")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Runtime flags
    testing: bool = _env_bool("TESTING")

    # Approval gate
    approval_timeout_hours: float = float(os.getenv("APPROVAL_TIMEOUT_HOURS", "24"))
    approval_sweep_interval_seconds: float = float(os.getenv("APPROVAL_SWEEP_INTERVAL_SECONDS", "300"))
    upfront_approval: bool = _env_bool("UPFRONT_APPROVAL", "true")
    approvers_staging: tuple[str, ...] = _env_list("APPROVERS_STAGING")
    approvers_production: tuple[str, ...] = _env_list("APPROVERS_PRODUCTION")

    # Pipeline
    max_concurrent_pipelines: int = int(os.getenv("MAX_CONCURRENT_PIPELINES", "5"))
    simulated_stage_delay_seconds: float = float(os.getenv("SIMULATED_STAGE_DELAY_SECONDS", "0"))

    # Resource stabilization
    stabilization_environments: tuple[str, ...] = _env_list("STABILIZATION_ENVIRONMENTS")
    stabilization_cpu_delta_threshold: float = float(os.getenv("STABILIZATION_CPU_DELTA_THRESHOLD", "10"))
    stabilization_memory_delta_threshold: float = float(os.getenv("STABILIZATION_MEMORY_DELTA_THRESHOLD", "10"))
    stabilization_latency_delta_threshold: float = float(os.getenv("STABILIZATION_LATENCY_DELTA_THRESHOLD", "15"))
    stabilization_polling_interval_seconds: float = float(os.getenv("STABILIZATION_POLLING_INTERVAL_SECONDS", "30"))
    stabilization_consecutive_checks: int = int(os.getenv("STABILIZATION_CONSECUTIVE_CHECKS", "3"))
    stabilization_min_wait_seconds: float = float(os.getenv("STABILIZATION_MIN_WAIT_SECONDS", "120"))
    stabilization_max_wait_seconds: float = float(os.getenv("STABILIZATION_MAX_WAIT_SECONDS", "1800"))

    # Audit retention
    audit_retention_days: int = int(os.getenv("AUDIT_RETENTION_DAYS", "90"))

    # Celery
    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    celery_result_backend: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

    @model_validator(mode="after")
    def validate_intervals(self) -> "Settings":
        if self.approval_timeout_hours <= 0:
            raise ValueError("APPROVAL_TIMEOUT_HOURS must be positive")
        if self.approval_sweep_interval_seconds <= 0:
            raise ValueError("APPROVAL_SWEEP_INTERVAL_SECONDS must be positive")
        if self.max_concurrent_pipelines < 1:
            raise ValueError("MAX_CONCURRENT_PIPELINES must be at least 1")
        if self.stabilization_max_wait_seconds < self.stabilization_min_wait_seconds:
            raise ValueError("STABILIZATION_MAX_WAIT_SECONDS must not be lower than STABILIZATION_MIN_WAIT_SECONDS")
        return self


settings = Settings()

from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Core API Settings
    api_host: str = Field("0.0.0.0", alias="API_HOST")
    api_port: int = Field(8000, alias="API_PORT")
    app_env: str = Field("dev", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(True, alias="LOG_JSON")

    # Persistence / broker
    database_url: str = Field("sqlite:///./integration_engine.db", alias="DATABASE_URL")
    redis_url: str = Field("redis://localhost:6379/0", alias="REDIS_URL")

    # Webhook ingress
    webhook_secret: str | None = Field(None, alias="WEBHOOK_SECRET")
    webhook_signature_tolerance_seconds: int = Field(300, alias="WEBHOOK_SIGNATURE_TOLERANCE_SECONDS")

    # Sync orchestration
    sync_worker_pool_size: int = Field(8, alias="SYNC_WORKER_POOL_SIZE")
    sync_batch_size: int = Field(100, alias="SYNC_BATCH_SIZE")
    sync_max_retries: int = Field(3, alias="SYNC_MAX_RETRIES")
    sync_backoff_cap_seconds: int = Field(6 * 3600, alias="SYNC_BACKOFF_CAP_SECONDS")
    sync_backoff_jitter: float = Field(0.25, alias="SYNC_BACKOFF_JITTER")
    sync_timeout_seconds: int = Field(1800, alias="SYNC_TIMEOUT_SECONDS")
    sync_timeout_overrides: str | None = Field(None, alias="SYNC_TIMEOUT_OVERRIDES")  # format STRATEGY:seconds;STRATEGY2:seconds
    health_failure_threshold: int = Field(3, alias="HEALTH_FAILURE_THRESHOLD")

    # Adapter call robustness
    adapter_max_attempts: int = Field(3, alias="ADAPTER_MAX_ATTEMPTS")
    adapter_backoff_base_seconds: float = Field(1.0, alias="ADAPTER_BACKOFF_BASE_SECONDS")
    adapter_backoff_max_seconds: float = Field(30.0, alias="ADAPTER_BACKOFF_MAX_SECONDS")
    circuit_failure_threshold: int = Field(5, alias="CIRCUIT_FAILURE_THRESHOLD")
    circuit_recovery_timeout_seconds: float = Field(60.0, alias="CIRCUIT_RECOVERY_TIMEOUT_SECONDS")

    # Event pipeline
    event_max_retries: int = Field(3, alias="EVENT_MAX_RETRIES")
    event_retry_base_seconds: float = Field(30.0, alias="EVENT_RETRY_BASE_SECONDS")
    event_retry_cap_seconds: float = Field(3600.0, alias="EVENT_RETRY_CAP_SECONDS")
    event_worker_pool_size: int = Field(8, alias="EVENT_WORKER_POOL_SIZE")
    event_batch_limit: int = Field(500, alias="EVENT_BATCH_LIMIT")
    idempotency_ttl_hours: int = Field(24 * 7, alias="IDEMPOTENCY_TTL_HOURS")  # result cache retention only

    # Identity reconciliation
    identity_promotion_threshold: float = Field(0.6, alias="IDENTITY_PROMOTION_THRESHOLD")
    identity_conflict_confidence: float = Field(0.6, alias="IDENTITY_CONFLICT_CONFIDENCE")
    identity_default_source_weight: float = Field(0.4, alias="IDENTITY_DEFAULT_SOURCE_WEIGHT")
    identity_source_weights: str | None = Field(None, alias="IDENTITY_SOURCE_WEIGHTS")  # format system:weight;system2:weight

    # Data quality
    quality_max_issues: int = Field(50, alias="QUALITY_MAX_ISSUES")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings():
    """Clear cached settings (useful in tests when env vars change)."""
    get_settings.cache_clear()


def parse_float_map(raw: str | None) -> dict[str, float]:
    mapping: dict[str, float] = {}
    if not raw:
        return mapping
    for part in (p for p in raw.split(";") if p.strip()):
        if ":" not in part:
            continue
        k, v = part.split(":", 1)
        try:
            mapping[k.strip()] = float(v.strip())
        except ValueError:
            continue
    return mapping


def parse_timeout_overrides(raw: str | None) -> dict[str, int]:
    return {k.upper(): int(v) for k, v in parse_float_map(raw).items()}

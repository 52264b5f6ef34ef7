from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "jobsync"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    control_api_key: str | None = None
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: str | None = None
    request_timeout_seconds: float = 10.0
    side_fetch_timeout_seconds: float = 3.0
    avatar_bucket: str = "profile-media"
    snapshot_db_path: str | None = None
    full_pass_debounce_ms: int = 2000
    degraded_debounce_multiplier: float = 2.0
    idle_defer_seconds: float = 2.0
    domain_timings_json: str | None = None
    otel_enabled: bool = True
    otel_service_name: str = "jobsync"
    otel_exporter_otlp_endpoint: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="JOBSYNC_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()

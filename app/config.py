from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Trend Digest Scheduler"
    app_version: str = "0.1.0"
    environment: str = "development"
    log_level: str = "INFO"

    # User store (Supabase PostgREST)
    supabase_url: str | None = None
    supabase_service_key: str | None = None
    supabase_users_table: str = "users"
    supabase_timeout_seconds: float = 15.0

    # Analysis endpoint
    api_base_url: str = "http://localhost:3001/api"
    analysis_timeout_seconds: float = 300.0
    videos_per_query: int = 3

    # Email transport (Brevo)
    brevo_api_key: str | None = None
    brevo_base_url: str = "https://api.brevo.com/v3"
    email_sender: str = "noreply@lazy-trends.com"
    email_sender_name: str = "The Complete Lazy Trend"
    email_subject: str = "Your TikTok Trend Analysis Results"
    email_timeout_seconds: float = 15.0

    # Scheduling defaults
    default_timezone: str = "UTC"
    default_local_hour: int = 9

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "trend_digest"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()

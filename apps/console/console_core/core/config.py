from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Console Core"
    app_env: str = "local"
    service_name: str = "console-core"
    service_version: str = "0.1.0"
    backend_url: str = "http://localhost:54321"
    backend_anon_key: str = "replace-me"
    gateway_timeout_seconds: float = 10.0
    change_poll_interval_seconds: float = 5.0
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    jwt_verify_signature: bool = True
    access_token_ttl_seconds: int = 3600
    retry_max_retries: int = 3
    retry_initial_delay_seconds: float = 0.3
    retry_backoff_multiplier: float = 2.0
    provisioning_max_retries: int = 2
    bypass_role_names: list[str] = ["Admin"]
    auto_provision_profiles: bool = False
    default_profile_role: str = "Sales"
    metrics_enabled: bool = False
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str | None = None
    otel_console_exporter: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Gemini
    gemini_api_key: str = ""
    gemini_api_url: str = "https://generativelanguage.googleapis.com/v1beta"
    image_model: str = "gemini-2.5-flash-image-preview"
    text_model: str = "gemini-2.5-flash"

    # Usage quotas (per process)
    images_per_minute: int = 20
    requests_per_day: int = 200
    usage_state_file: str = ""  # empty = in-memory only
    refund_quota_on_fatal: bool = False

    # Remote call policy
    max_concurrency: int = 2
    request_timeout_seconds: float = 45.0
    max_attempts: int = 3
    base_retry_delay: float = 0.75
    max_retry_delay: float = 10.0
    retry_jitter: float = 0.25

    # Artifacts
    generated_dir: str = "generated"

    # Input validation
    min_prompt_length: int = 3
    max_prompt_length: int = 8000
    blocked_terms: str = ""  # comma-separated, matched case-insensitively
    max_image_bytes: int = 20 * 1024 * 1024

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8787

    # CORS
    allowed_origins: str = "*"  # comma-separated

    # Per-client HTTP throttle on generation routes (slowapi syntax)
    generation_rate_limit: str = "30/minute"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable
    sentry_traces_sample_rate: float = 0.1

    @property
    def blocked_terms_list(self) -> list[str]:
        return [t.strip().lower() for t in self.blocked_terms.split(",") if t.strip()]


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if not settings.gemini_api_key:
        errors.append("GEMINI_API_KEY must be set")

    if settings.max_concurrency < 1:
        errors.append("MAX_CONCURRENCY must be at least 1")

    if settings.max_attempts < 1:
        errors.append("MAX_ATTEMPTS must be at least 1")

    if settings.app_env == "production":
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))

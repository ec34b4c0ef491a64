from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "gw_user"
    postgres_password: str = "changeme"
    postgres_db: str = "ai_gateway"
    database_url: str = ""  # overrides the postgres_* parts when set

    @property
    def postgres_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Upstream completion providers
    openai_api_key: str = ""
    openai_api_url: str = "https://api.openai.com/v1/chat/completions"
    openai_default_model: str = "gpt-4o"
    anthropic_api_key: str = ""
    anthropic_api_url: str = "https://api.anthropic.com/v1/messages"
    anthropic_default_model: str = "claude-sonnet-4-5-20250929"
    anthropic_version: str = "2023-06-01"
    anthropic_max_tokens: int = 4096

    # Streaming
    stream_timeout_seconds: float = 280.0  # stays inside the 300s platform ceiling
    upstream_connect_timeout_seconds: float = 10.0

    # Pooled speech credentials (comma-separated)
    elevenlabs_api_keys: str = ""
    elevenlabs_api_url: str = "https://api.elevenlabs.io"
    elevenlabs_model_id: str = "eleven_monolingual_v1"
    pool_cache_seconds: float = 60.0
    pool_rate_limit_cooldown_seconds: float = 60.0
    pool_near_limit_fraction: float = 0.8

    @property
    def elevenlabs_keys(self) -> list[str]:
        return [k.strip() for k in self.elevenlabs_api_keys.split(",") if k.strip()]

    # Admission
    default_voice_limit: int = 3
    default_text_limit: int = 100
    quota_reset_policy: str = "utc_midnight"  # utc_midnight | rolling_24h
    voice_gate_failure_policy: str = "fail_open"  # fail_open | fail_closed
    chat_gate_failure_policy: str = "fail_closed"
    exempt_prompt_types: str = "daily_affirmation,scheduled_refresh,background_summary"
    chat_require_auth: bool = False

    @property
    def exempt_prompt_type_set(self) -> frozenset[str]:
        return frozenset(p.strip() for p in self.exempt_prompt_types.split(",") if p.strip())

    # Auth
    jwt_secret_key: str = "change-this-to-a-random-string"
    jwt_algorithm: str = "HS256"

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.app_env == "production":
        if settings.jwt_secret_key in ("change-this-to-a-random-string", ""):
            errors.append("JWT_SECRET_KEY must be set to a secure random value")
        elif len(settings.jwt_secret_key) < 32:
            errors.append("JWT_SECRET_KEY must be at least 32 characters")
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if settings.quota_reset_policy not in ("utc_midnight", "rolling_24h"):
        errors.append("QUOTA_RESET_POLICY must be 'utc_midnight' or 'rolling_24h'")

    for name in ("voice_gate_failure_policy", "chat_gate_failure_policy"):
        if getattr(settings, name) not in ("fail_open", "fail_closed"):
            errors.append(f"{name.upper()} must be 'fail_open' or 'fail_closed'")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))

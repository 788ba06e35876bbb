from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "sqlite:///classhub.db"
    redis_url: str = "redis://localhost:6379/0"
    api_title: str = "Classhub API"
    access_token_expire_minutes: int = 60
    refresh_token_expire_minutes: int = 60 * 24 * 7
    jwt_secret: str = "classhub-development-secret-change-me"
    jwt_algorithm: str = "HS256"
    bcrypt_rounds: int = 12
    login_domain: str = "college.local"
    setup_key: str = ""
    store_timeout_seconds: float = 5.0
    subscriber_queue_depth: int = 256
    history_limit: int = 100
    bulk_concurrency: int = 4
    bulk_max_errors: int = 10
    rate_limit_enabled: bool = True
    sensitive_rate_limit: str = "5/minute"


settings = Settings()

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # VK API (feed source)
    vk_access_token: str = ""
    vk_api_base: str = "https://api.vk.com/method"
    vk_api_version: str = "5.199"

    # Telegram Bot (delivery transport)
    telegram_bot_token: str = ""

    # Database
    database_url: str = "sqlite+aiosqlite:///feedrank.db"

    # Control API
    web_enabled: bool = True
    web_host: str = "0.0.0.0"
    web_port: int = 8888

    log_level: str = "INFO"
    http_timeout_seconds: float = 30.0

    # System task cadence (minutes)
    reconcile_interval_minutes: int = 5
    pending_sweep_interval_minutes: int = 10
    high_dynamics_interval_minutes: int = 5

    # Threshold engine
    threshold_sample_size: int = 200

    # View tracking
    view_history_retention_days: int = 4
    high_dynamics_lookback_hours: int = 24


settings = Settings()

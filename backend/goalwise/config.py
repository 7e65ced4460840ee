from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Goalwise API"
    gemini_api_key: str = ""
    # must support streamGenerateContent with function calling
    gemini_model: str = "gemini-2.0-flash"  # override via GEMINI_MODEL in .env if needed
    database_url: str = ""
    db_pool_min_size: int = 1
    db_pool_max_size: int = 10
    # Comma-separated origins for CORS. Use "*" only for demo environments.
    cors_allow_origins: str = "*"
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"
    log_level: str = "INFO"

    inflation_rate: float = 0.06
    max_tool_steps: int = 10
    default_currency: str = "INR"

    market_data_base_url: str = "https://query1.finance.yahoo.com/v8/finance/chart"
    market_data_timeout_seconds: float = 8.0
    # client-side reads; shared caches may hold closed-period bars longer
    market_data_cache_ttl_seconds: int = 300
    market_data_shared_cache_ttl_seconds: int = 1800
    dashboard_cache_ttl_seconds: int = 60

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()

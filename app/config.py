from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: str = ""

    # Dashboard CORS origins (comma-separated)
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    log_level: str = "INFO"

    # Provider HTTP calls
    provider_timeout_seconds: float = 30.0
    provider_max_retries: int = 3

    # Status sync
    sync_batch_size: int = 20
    sync_lock_ttl_seconds: int = 300  # 5 min lease per (org, provider)
    sync_finished_lookback_days: int = 180

    # Bulk delete
    delete_chunk_size: int = 100

    # Monthly check: a found boleto matches an expected value when
    # |found - expected| <= max(abs, pct * expected)
    monthly_check_tolerance_abs: float = 0.05
    monthly_check_tolerance_pct: float = 0.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()

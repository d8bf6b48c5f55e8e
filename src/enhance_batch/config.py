from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_version: str = "0.1.0"
    database_path: str = "data/batches.db"
    blob_root: str = "data/blobs"
    blob_signing_key: str = "change-me"
    public_base_url: str = "http://localhost:8900"
    app_url: str = "http://localhost:3000"

    provider_base_url: str = "https://api.nanobanana.io/v1"
    provider_api_key: str = ""
    provider_timeout_sec: int = 30

    poll_interval_sec: float = 5.0
    poll_max_attempts: int = 60

    source_url_ttl_sec: int = 600
    output_url_ttl_sec: int = 86400
    bundle_url_ttl_sec: int = 3600
    bundle_reuse_margin_sec: int = 60
    bundle_fetch_batch_size: int = 5

    item_concurrency: int = 3
    max_files: int = 20
    max_file_mb: int = 50
    accepted_types: str = "image/jpeg,image/jpg,image/png,image/webp,image/heic"

    retention_hours: int = 168

    admin_api_token: str = ""
    worker_secret: str = ""
    email_webhook_url: str = ""

    log_level: str = "INFO"
    log_json: bool = False


settings = Settings()

import socket

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_env: str = "local"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    admin_username: str = "admin"
    admin_password: str = "admin"
    viewer_username: str = ""
    viewer_password: str = ""

    database_url: str = "sqlite:///./roster_sync.db"
    tenant_database_url_template: str = "sqlite:///./tenant_{tenant_id}.db"

    roster_base_url: str = "https://api.clever.com/v3.0"
    roster_api_token: str = ""
    roster_page_size: int = 1000
    roster_timeout_seconds: float = 30.0
    roster_max_429_retries: int = 3
    roster_retry_delay_seconds: float = 1.0

    sync_concurrency_limit: int = 5
    sync_lock_ttl_minutes: int = 30
    sync_tenant_timeout_seconds: int = 3600
    sync_instance_name: str = socket.gethostname()
    sync_entity_types: list[str] = ["term", "student", "teacher", "section", "admin"]


settings = Settings()

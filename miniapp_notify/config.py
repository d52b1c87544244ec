from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str | None = Field(default=None, validation_alias=AliasChoices("database_url", "postgres_url"))
    database_pool_min: int = 1
    database_pool_max: int = 2
    database_connect_timeout_seconds: int = 5
    database_sslmode: str | None = None  # disable | require | verify-full ...
    admin_token: str | None = None
    miniapp_origin: str = "https://nft-season.vercel.app"
    app_fid: int = 372916
    test_fid: int = 372916
    notification_id_prefix: str = "nft-season"
    notify_notification_id: str = "00000000-0000-4000-8000-000000000001"
    notification_timeout_seconds: float = 12.0
    notification_batch_size: int = 100
    welcome_enabled: bool = True
    welcome_title: str = "Welcome to NFT Season"
    welcome_body: str = "Notifications are on. We'll ping you when new collections go live."
    welcome_target_url: str | None = None
    editor_token: str | None = None
    editor_no_token: bool = False
    notify_manager_host: str = "127.0.0.1"
    notify_manager_port: int = 8788
    notify_api: str = "https://nft-season.vercel.app"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()

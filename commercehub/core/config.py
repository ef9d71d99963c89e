from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional, List


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "CommerceHub"
    APP_PORT: int = 9210
    DEBUG: bool = False
    LOGS_PATH: str = "/tmp/commercehub_logs"
    LOG_LEVEL: str = "INFO"

    # Database
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "commercehub"
    POSTGRES_PORT: int = 5432
    SQLALCHEMY_DATABASE_URI: Optional[str] = None

    # Secrets
    PII_HASH_SECRET: str = "change-me-pii-secret"
    ADMIN_SECRET: Optional[str] = None
    CRON_SECRET: Optional[str] = None

    # Shopify (storefront)
    SHOPIFY_STORE_DOMAIN: str = ""
    SHOPIFY_ADMIN_ACCESS_TOKEN: str = ""
    SHOPIFY_API_VERSION: str = "2024-01"
    SHOPIFY_WEBHOOK_SECRET: str = ""

    # Square (point-of-sale)
    SQUARE_ACCESS_TOKEN: str = ""
    SQUARE_ENV: str = "sandbox"
    SQUARE_LOCATION_IDS: List[str] = []
    SQUARE_WEBHOOK_SIGNATURE_KEY: str = ""
    SQUARE_WEBHOOK_URL: str = ""

    # AnyRoad (booking)
    ANYROAD_API_KEY: str = ""
    ANYROAD_API_URL: str = "https://api.anyroad.com/v2"
    ANYROAD_WEBHOOK_SECRET: str = ""

    # Outbound source calls
    SOURCE_TIMEOUT_SECONDS: float = 30.0
    SOURCE_MAX_RETRIES: int = 3
    SOURCE_RETRY_BASE_DELAY: float = 1.0

    # Backfill
    BACKFILL_PAGE_SIZE: int = 50
    BACKFILL_WINDOW_DAYS: int = 7
    BACKFILL_LOOKBACK_DAYS: int = 90

    # Reconciliation
    RECONCILE_REVENUE_EPSILON: str = "0.01"
    RECONCILE_LOOKBACK_DAYS: int = 7
    RESYNC_URL: Optional[str] = None

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    AGGREGATE_REFRESH_MINUTES: int = 15
    RECONCILE_HOUR: int = 3
    RECONCILE_AUTO_FIX: bool = False

    @property
    def DATABASE_URL(self) -> str:
        if self.SQLALCHEMY_DATABASE_URI:
            return self.SQLALCHEMY_DATABASE_URI
        return f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional, List, Union


class Settings(BaseSettings):
    # Database
    database_url: str

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    redis_password: Optional[str] = None
    redis_db: int = 0

    # Firebase
    firebase_project_id: str
    firebase_credentials_path: str

    # API
    api_v1_str: str = "/api/v1"
    api_base_url: Optional[str] = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"

    # Environment
    environment: str = "development"
    debug: bool = True

    # Payment provider (MoneyFusion)
    payment_checkout_url: str
    payment_status_url: str = "https://www.pay.moneyfusion.net/paiementNotif"
    payment_verify_timeout_seconds: float = 10.0
    payment_default_client_number: str = "00000000"
    # OPEN checkouts older than this that the processor still reports unpaid are closed as FAILED
    checkout_abandon_after_hours: int = 48

    # Entitlements
    subscription_period_days: int = 30
    download_retention_days: int = 30
    download_lock_timeout_seconds: int = 30

    # Media storage
    media_root: str = "media/videos"
    downloads_root: str = "media/downloads"
    stream_chunk_size: int = 1024 * 1024

    # CORS
    cors_origins: List[str] = ["http://localhost:3000"]

    @field_validator('cors_origins', mode='before')
    @classmethod
    def parse_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        """Parse CORS origins from environment variable (comma-separated) or use default list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @property
    def webhook_url(self) -> str:
        return f"{self.api_base_url}{self.api_v1_str}/payments/webhook"

    @property
    def payment_return_url(self) -> str:
        return f"{self.frontend_url}/payment/success"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Allow extra fields from environment


settings = Settings()

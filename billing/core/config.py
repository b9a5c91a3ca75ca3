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

    # Collaborators
    catalogue_service_url: str = "http://catalogue-svc:3000"
    customer_service_url: str = "http://customer-svc:3000"
    payment_service_url: str = "http://payment-svc:3000"
    event_bus_url: Optional[str] = None  # Events are only logged when unset
    http_timeout_seconds: float = 10.0

    # Firebase (analytics sink)
    analytics_enabled: bool = False
    firebase_project_id: Optional[str] = None
    firebase_credentials_path: Optional[str] = None

    # Payment retry policy
    retry_max_attempts: int = 7
    retry_initial_delay_seconds: int = 60 * 60
    retry_max_delay_seconds: int = 3 * 24 * 60 * 60
    retry_backoff_multiplier: float = 2
    retry_grace_period_days: int = 15
    retry_retention_days: int = 90
    retry_lock_timeout_seconds: int = 300

    # Subscription lifecycle
    proration_threshold: float = 1.0
    renewal_lookahead_days: int = 3
    plan_cache_ttl_minutes: int = 5

    # API
    api_v1_str: str = "/api/v1"

    # Environment
    environment: str = "development"
    debug: bool = True

    # CORS
    cors_origins: List[str] = ["http://localhost:5000"]

    @field_validator('cors_origins', mode='before')
    @classmethod
    def parse_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        """Parse CORS origins from environment variable (comma-separated) or use default list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Allow extra fields from environment


settings = Settings()

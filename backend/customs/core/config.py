from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Customs Declaration Core"
    DEBUG: bool = False
    ENV: str = "production"

    # Server
    PORT: int = 8000

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://customs_user:change_me@db:5432/customs_db"

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS string into a list of origins."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    # CEISA gateway (DJBC customs portal)
    CEISA_API_URL: str = "https://api-ceisa.beacukai.go.id"
    CEISA_API_KEY: Optional[str] = None
    CEISA_TIMEOUT_SECONDS: float = 30.0

    @property
    def ceisa_enabled(self) -> bool:
        """Check if the CEISA gateway is configured."""
        return bool(self.CEISA_API_KEY and self.CEISA_API_KEY.strip())

    # Background connectivity check
    CEISA_HEALTH_CHECK_ENABLED: bool = False
    CEISA_HEALTH_CHECK_INTERVAL_SECONDS: float = 300.0

    # Outbound EDI queue
    EDI_QUEUE_MAX_ATTEMPTS: int = 3

    # Diagnostic capture (admin only)
    DIAGNOSTIC_LOG_SIZE: int = 100

    # Import tax table (percent)
    PPH_RATE_WITH_API: str = "2.5"
    PPH_RATE_WITHOUT_API: str = "7.5"
    DEFAULT_PPN_RATE: str = "11"

    # Minor-unit digits of the local currency (IDR totals are whole rupiah)
    LOCAL_CURRENCY_PRECISION: int = 0

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()

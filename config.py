import os
from datetime import timedelta
from typing import List


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return default
    return [part.strip() for part in raw.split(",") if part.strip()]


class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "parking")
    JWT_SECRET: str = os.getenv("JWT_SECRET", "change_me_in_prod")
    JWT_EXPIRES_DAYS: int = int(os.getenv("JWT_EXPIRES_DAYS", "30"))
    ALLOWED_ORIGINS: List[str] = _env_list("ALLOWED_ORIGINS", default=["*"])
    # Mock gateway behaviour
    PAYMENT_LATENCY_SECS: float = float(os.getenv("PAYMENT_LATENCY_SECS", "1.0"))
    PAYMENT_FAILURE_RATE: float = float(os.getenv("PAYMENT_FAILURE_RATE", "0.1"))
    # Location/slot administration and the all-bookings listing
    ENFORCE_ADMIN_ROLE: bool = _env_bool("ENFORCE_ADMIN_ROLE", default=False)
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    PORT: int = int(os.getenv("PORT", "8000"))

    @property
    def jwt_expires_delta(self) -> timedelta:
        return timedelta(days=self.JWT_EXPIRES_DAYS)


settings = Settings()

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings

from .bibs import BibRange, build_ranges


class Settings(BaseSettings):
    # Security
    RACEOPS_ADMIN_USERNAME: str = "admin"
    RACEOPS_ADMIN_PASSWORD: str = "change-me"
    RACEOPS_SECRET_KEY: str = "dev-secret-change-me"

    # Database
    RACEOPS_DB_URL: str = "sqlite:///./raceops.db"

    # Bibs: category -> [lower, upper], inclusive
    RACEOPS_BIB_RANGES: dict[str, tuple[int, int]] = {
        "SHORT": (5001, 5999),
        "LONG": (10001, 10999),
    }
    RACEOPS_BIB_MAX_ATTEMPTS: int = 5
    RACEOPS_BIB_BACKOFF_SECONDS: float = 0.05

    # Repair job; 0 = no rate limit
    RACEOPS_REPAIR_WRITES_PER_SECOND: float = 0.0

    RACEOPS_LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True

    def bib_ranges(self) -> dict[str, BibRange]:
        return build_ranges(self.RACEOPS_BIB_RANGES)


@lru_cache
def get_settings() -> Settings:
    return Settings()

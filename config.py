import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read from the environment (and `.env` if present)."""

    database_url: str = "sqlite+aiosqlite:///./rideshare.db"
    sql_echo: bool = False
    log_level: str = "INFO"

    # Search dates are matched against the ride's calendar day in this zone
    local_timezone: str = "Europe/Prague"
    search_radius_default_km: float = 15.0
    search_radius_max_km: float = 100.0
    search_max_results: int = 50

    # Origin/destination closer than this are treated as the same place
    same_point_tolerance_m: float = 50.0
    max_seats: int = 8

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            sql_echo=_env_bool("SQL_ECHO"),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            local_timezone=os.getenv("LOCAL_TIMEZONE", cls.local_timezone),
            search_radius_default_km=float(
                os.getenv("SEARCH_RADIUS_DEFAULT_KM", cls.search_radius_default_km)
            ),
            search_radius_max_km=float(os.getenv("SEARCH_RADIUS_MAX_KM", cls.search_radius_max_km)),
            search_max_results=int(os.getenv("SEARCH_MAX_RESULTS", cls.search_max_results)),
            same_point_tolerance_m=float(
                os.getenv("SAME_POINT_TOLERANCE_M", cls.same_point_tolerance_m)
            ),
            max_seats=int(os.getenv("MAX_SEATS", cls.max_seats)),
        )


settings = Settings.from_env()


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=level or settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

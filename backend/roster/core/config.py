from pydantic_settings import BaseSettings, NoDecode
from pydantic import validator
from typing import Annotated, List
import json
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import socket


class Settings(BaseSettings):
    # Application settings
    APP_NAME: str = "Sunny Days Roster"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # CORS settings
    ALLOWED_ORIGINS: Annotated[List[str], NoDecode] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./roster.db"
    DATABASE_ECHO: bool = False

    # Roster day settings
    ROSTER_TIMEZONE: str = "America/New_York"
    POLL_INTERVAL_SECONDS: float = 5.0

    # Daily preparation guard (one run per device per day)
    DEVICE_ID: str = socket.gethostname()
    PREPARE_MARKER_PATH: str = ".roster_prepared.json"

    # Bus eligibility policy table
    BUS_SCHOOLS: Annotated[List[str], NoDecode] = ["Bain", "MC", "MHE", "QG"]
    BUS_SCHOOL_YEARS: Annotated[List[str], NoDecode] = [
        "FT - A",
        "FT - B/A",
        "PT3 - A - TWR",
        "PT3 - A - MWF",
        "PT2 - A - WR",
        "PT3 - A - TWF",
    ]

    @validator("ALLOWED_ORIGINS", "BUS_SCHOOLS", "BUS_SCHOOL_YEARS", pre=True)
    def parse_csv_list(cls, v):
        # Env values arrive raw: either a JSON array or a comma-separated list
        if isinstance(v, str) and v.strip().startswith("["):
            return json.loads(v)
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @validator("DATABASE_URL")
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        return v

    @validator("ROSTER_TIMEZONE")
    def validate_timezone(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @validator("POLL_INTERVAL_SECONDS")
    def validate_poll_interval(cls, v):
        if v <= 0:
            raise ValueError("POLL_INTERVAL_SECONDS must be positive")
        return v

    @property
    def roster_zone(self) -> ZoneInfo:
        return ZoneInfo(self.ROSTER_TIMEZONE)

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()

"""
storage/config.py

Environment-driven settings for the MedAgenda core.

Variables
---------
MEDAGENDA_DB_PATH           SQLite file (default: <project>/data/medagenda.db)
APP_DATA_KEY                Fernet key used to encrypt stored records
MEDAGENDA_TIMEZONE          IANA zone used to decide "today" and "the past"
MEDAGENDA_SLOT_START_HOUR   First bookable hour of the day (default 9)
MEDAGENDA_SLOT_END_HOUR     Hour at which the last slot must end (default 18)
MEDAGENDA_SLOT_MINUTES      Slot length in minutes (default 30)
MEDAGENDA_DEFAULT_DURATION  Appointment duration when none is given (default 30)

Settings are read once and cached; call ``get_settings.cache_clear()`` after
changing the environment (tests do this).
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_DEFAULT_DB_PATH = _PROJECT_ROOT / "data" / "medagenda.db"


class Settings(BaseModel):
    db_path: Path = _DEFAULT_DB_PATH
    data_key: str | None = Field(default=None, repr=False)
    timezone: str = "America/Argentina/Buenos_Aires"
    slot_start_hour: int = Field(default=9, ge=0, le=23)
    slot_end_hour: int = Field(default=18, ge=1, le=24)
    slot_minutes: int = Field(default=30, gt=0, le=240)
    default_duration: int = Field(default=30, gt=0)

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @model_validator(mode="after")
    def _slot_window(self) -> "Settings":
        if self.slot_end_hour <= self.slot_start_hour:
            raise ValueError("slot_end_hour must be after slot_start_hour")
        return self

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        values: dict[str, object] = {}
        mapping = {
            "MEDAGENDA_DB_PATH": "db_path",
            "APP_DATA_KEY": "data_key",
            "MEDAGENDA_TIMEZONE": "timezone",
            "MEDAGENDA_SLOT_START_HOUR": "slot_start_hour",
            "MEDAGENDA_SLOT_END_HOUR": "slot_end_hour",
            "MEDAGENDA_SLOT_MINUTES": "slot_minutes",
            "MEDAGENDA_DEFAULT_DURATION": "default_duration",
        }
        for var, field in mapping.items():
            raw = env.get(var)
            if raw:
                values[field] = raw
        return cls(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings, read from the environment once."""
    settings = Settings.from_env()
    logger.debug(
        "Settings loaded: db=%s timezone=%s slots=%02d:00-%02d:00/%dmin",
        settings.db_path,
        settings.timezone,
        settings.slot_start_hour,
        settings.slot_end_hour,
        settings.slot_minutes,
    )
    return settings

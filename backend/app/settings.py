from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings
from pydantic import Field

ROOM_TTL_SECONDS = 2 * 60 * 60
SWEEP_INTERVAL_SECONDS = 5 * 60

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    origin: str = Field(default="", alias="ORIGIN")
    max_players: int = Field(default=6, alias="MAX_PLAYERS", ge=1)
    room_ttl_sec: float = Field(default=ROOM_TTL_SECONDS, alias="ROOM_TTL_SEC", gt=0)
    sweep_interval_sec: float = Field(default=SWEEP_INTERVAL_SECONDS, alias="SWEEP_INTERVAL_SEC", gt=0)
    valid_set_delay_sec: float = Field(default=1.5, alias="VALID_SET_DELAY_SEC", ge=0)
    invalid_set_delay_sec: float = Field(default=1.0, alias="INVALID_SET_DELAY_SEC", ge=0)

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True

    def allowed_origins(self) -> List[str]:
        """
        Splits ORIGIN by commas, dropping blanks.
        Example: "https://set.example.com, https://www.set.example.com"
        """
        return ["http://localhost:5173"] + [x.strip() for x in self.origin.split(",") if x.strip()]

    def log_status(self) -> None:
        env_name = os.getenv("RENDER_SERVICE_NAME") or os.getenv("ENV", "unknown")
        logger.info(
            "Game settings: max_players=%s, room_ttl=%ss, sweep_interval=%ss, env=%s",
            self.max_players,
            self.room_ttl_sec,
            self.sweep_interval_sec,
            env_name,
        )


@lru_cache()
def get_settings() -> Settings:
    settings = Settings()
    settings.log_status()
    return settings

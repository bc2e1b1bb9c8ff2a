from __future__ import annotations

import os


class Config:
    DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
    PARTICIPANT_STALE_SECONDS = int(os.getenv("PARTICIPANT_STALE_SECONDS", "30"))
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "EUR")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

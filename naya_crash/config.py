# config.py
"""
Runtime settings for the crash service.

Values come from the environment (a local .env file is honoured). Tests and
embedders build their own ``Settings()`` and override attributes directly.
"""

import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


class Settings:
    APP_NAME = os.getenv("APP_NAME", "naya-crash")
    APP_ENV = os.getenv("APP_ENV", "dev")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./naya_crash.db")
    DB_ECHO = os.getenv("DB_ECHO", "0") == "1"

    # Demo accounts start with this balance
    STARTING_BALANCE = Decimal(os.getenv("STARTING_BALANCE", "1000.00"))

    # --- ROUND TIMING ---
    COUNTDOWN_SECONDS = int(os.getenv("CRASH_COUNTDOWN_SECONDS", "10"))
    COUNTDOWN_TICK_SECONDS = 1.0
    MULTIPLIER_TICK_SECONDS = int(os.getenv("CRASH_MULTIPLIER_TICK_MS", "50")) / 1000
    MULTIPLIER_SPEED = Decimal(os.getenv("CRASH_MULTIPLIER_SPEED", "0.14"))
    NEXT_ROUND_DELAY_SECONDS = float(os.getenv("CRASH_NEXT_ROUND_DELAY", "3"))

    # --- SAFETY ---
    STUCK_ROUND_TIMEOUT_SECONDS = int(os.getenv("CRASH_STUCK_TIMEOUT_SECONDS", "300"))
    SWEEP_INTERVAL_SECONDS = int(os.getenv("CRASH_SWEEP_INTERVAL_SECONDS", "60"))

    # --- BETTING ---
    MIN_BET_AMOUNT = Decimal(os.getenv("CRASH_MIN_BET", "0.10"))
    CRASH_JITTER = float(os.getenv("CRASH_JITTER", "0"))
    RECENT_ROUNDS_LIMIT = int(os.getenv("RECENT_ROUNDS_LIMIT", "5"))


settings = Settings()

"""
Runtime settings for the BloodLink API.

Everything is read from the environment once at import time. A local .env
file is honoured for development.
"""

import logging
import os

from dotenv import load_dotenv

load_dotenv()

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
DB_TIMEOUT_MS = int(os.getenv("DB_TIMEOUT_MS", 5000))

# Tokens
SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-key-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 12))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGIN", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Seconds allowed for a collaborator call (eligibility, distance)
EXTERNAL_CALL_TIMEOUT = float(os.getenv("EXTERNAL_CALL_TIMEOUT", 2.0))

# Background scan for stale requests / expired units, 0 disables it
EXPIRY_SCAN_INTERVAL = int(os.getenv("EXPIRY_SCAN_INTERVAL", 0))

# How long an OPEN request may wait for a responder, per urgency
REQUEST_DEADLINE_HOURS = {
    "CRITICAL": int(os.getenv("DEADLINE_CRITICAL_HOURS", 6)),
    "HIGH": int(os.getenv("DEADLINE_HIGH_HOURS", 24)),
    "MEDIUM": int(os.getenv("DEADLINE_MEDIUM_HOURS", 72)),
    "LOW": int(os.getenv("DEADLINE_LOW_HOURS", 168)),
}

EXPIRING_SOON_DAYS = 7
OVERDUE_ALERT_HOURS = 2


def configure_logging(level: str = None):
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

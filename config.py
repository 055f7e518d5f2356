"""Environment-driven settings."""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    DATABASE_URL = os.getenv('DATABASE_URL', f"sqlite:///{BASE_DIR / 'seatdesk.db'}")
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-change-me')
    UPLOAD_FOLDER = os.getenv('UPLOAD_FOLDER', str(BASE_DIR / 'uploads'))
    MAX_CONTENT_LENGTH = 5 * 1024 * 1024  # 5 MB upload cap
    SWEEP_INTERVAL_SECONDS = int(os.getenv('SWEEP_INTERVAL_SECONDS', '10'))
    ENABLE_SWEEPER = _flag('ENABLE_SWEEPER', 'true')
    SEED_DEMO_VENUE = _flag('SEED_DEMO_VENUE', 'true')
    CORS_ORIGINS = os.getenv('CORS_ORIGINS', '*')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    # Accounts registered with these emails get the admin role
    ADMIN_EMAILS = {
        email.strip().lower()
        for email in os.getenv('ADMIN_EMAILS', '').split(',')
        if email.strip()
    }
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

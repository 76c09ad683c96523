"""
Centralised engine settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseSettings):
    # ── Odoo ─────────────────────────────────────────────
    odoo_url: str = "http://localhost:8069"
    odoo_db: str = "odoo"
    odoo_username: str = "admin"
    odoo_api_key: str = ""
    odoo_timeout_seconds: float = 30.0

    # ── Engine ───────────────────────────────────────────
    tenant_id: str = "default"
    timezone: str = "America/Argentina/Buenos_Aires"
    cache_ttl_seconds: float = 300.0
    cache_max_size: int = 100
    default_limit: int = 50
    max_limit: int = 500
    max_subqueries: int = 5
    max_insights: int = 5

    # ── App ──────────────────────────────────────────────
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()

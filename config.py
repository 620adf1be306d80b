"""Application configuration loaded from environment variables."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, model_validator

load_dotenv()

_PROJECT_ROOT = Path(__file__).resolve().parent

logger = logging.getLogger(__name__)

_DEFAULT_SECRET = "change-me-in-production"  # noqa: S105


class Config(BaseModel):
    """Centralised app configuration backed by env vars."""

    # Storage
    database_path: str = str(_PROJECT_ROOT / "data" / "tagging.db")
    db_busy_timeout: float = 5.0  # seconds to wait on a locked database

    # Tagging
    brand: str = "MG"
    serial_pad: int = 6
    gap_scan_fallback: bool = False
    reservation_ttl_seconds: int = 900

    # Flask
    flask_host: str = "127.0.0.1"
    flask_port: int = 5000
    flask_debug: bool = True
    flask_secret_key: str = _DEFAULT_SECRET
    cors_origins: list[str] = ["http://localhost:5173"]

    @model_validator(mode="after")
    def _warn_risky_settings(self) -> Config:
        """Log warnings for settings that weaken guarantees."""
        if self.gap_scan_fallback:
            logger.warning(
                "GAP_SCAN_FALLBACK is enabled: failed gap scans will skip serial reuse"
            )
        if self.flask_secret_key == _DEFAULT_SECRET and not self.flask_debug:
            logger.warning("FLASK_SECRET_KEY is not set: using the development default")
        return self

    @classmethod
    def from_env(cls) -> Config:
        """Build config from environment variables."""
        cors_raw = os.getenv("CORS_ORIGINS", "http://localhost:5173")
        cors_origins = [o.strip() for o in cors_raw.split(",") if o.strip()]

        return cls(
            database_path=os.getenv(
                "DATABASE_PATH", str(_PROJECT_ROOT / "data" / "tagging.db")
            ),
            db_busy_timeout=float(os.getenv("DB_BUSY_TIMEOUT", "5.0")),
            brand=os.getenv("BRAND_CODE", "MG"),
            serial_pad=int(os.getenv("SERIAL_PAD", "6")),
            gap_scan_fallback=os.getenv("GAP_SCAN_FALLBACK", "false").lower()
            in ("1", "true", "yes"),
            reservation_ttl_seconds=int(os.getenv("RESERVATION_TTL_SECONDS", "900")),
            flask_host=os.getenv("FLASK_HOST", "127.0.0.1"),
            flask_port=int(os.getenv("FLASK_PORT", "5000")),
            flask_debug=os.getenv("FLASK_DEBUG", "true").lower() in ("1", "true", "yes"),
            flask_secret_key=os.getenv("FLASK_SECRET_KEY", _DEFAULT_SECRET),
            cors_origins=cors_origins,
        )


settings = Config.from_env()

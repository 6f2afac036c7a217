"""GrowthLab Metrics — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Database ──
    database_url: str = ""

    # ── App ──
    log_level: str = "INFO"
    cors_origins: List[str] = ["*"]

    # ── Calculation ──
    default_decimal_places: int = 2

    # ── Scheduled recalculation ──
    scheduler_enabled: bool = True
    recalculation_hour: int = 3  # Daily run at 3 AM UTC
    recalculation_company_ids: List[str] = []

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Serverless hosts have a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME"):
            return "sqlite:////tmp/growthlab.db"
        return "sqlite:///./growthlab.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()

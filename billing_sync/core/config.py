import os
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv


class Settings:
    """Centralised application configuration sourced from environment variables."""

    def __init__(self) -> None:
        load_dotenv()
        self.stripe_webhook_secret = self._get("STRIPE_WEBHOOK_SECRET")
        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY")
        self.stripe_webhook_tolerance = self._get_int("STRIPE_WEBHOOK_TOLERANCE", default=300)
        self.database_path = Path(os.getenv("DATABASE_PATH", "data/billing.db")).resolve()
        self.store_timeout_seconds = self._get_float("STORE_TIMEOUT_SECONDS", default=5.0)
        self.provider_timeout_seconds = self._get_float("PROVIDER_TIMEOUT_SECONDS", default=10.0)
        self.notify_timeout_seconds = self._get_float("NOTIFY_TIMEOUT_SECONDS", default=2.0)
        self.plan_names = self._parse_plan_names(os.getenv("PLAN_NAMES", ""))
        origins = os.getenv("CORS_ALLOW_ORIGINS")
        if origins:
            self.cors_allow_origins = [item.strip() for item in origins.split(",") if item.strip()]
        else:
            self.cors_allow_origins = ["*"]

    @staticmethod
    def _get(key: str) -> str:
        value = os.getenv(key)
        if not value:
            raise RuntimeError(f"Missing required environment variable: {key}")
        return value

    @staticmethod
    def _get_int(key: str, default: Optional[int] = None) -> int:
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise RuntimeError(f"Missing required environment variable: {key}")
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be an integer") from exc

    @staticmethod
    def _get_float(key: str, default: float) -> float:
        value = os.getenv(key)
        if value is None:
            return default
        try:
            parsed = float(value)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be a number") from exc
        if parsed <= 0:
            raise RuntimeError(f"Environment variable {key} must be positive")
        return parsed

    @staticmethod
    def _parse_plan_names(raw: str) -> Dict[str, str]:
        """``price_basic=Basic Plan,price_pro=Pro Plan`` -> mapping."""
        names: Dict[str, str] = {}
        for entry in raw.split(","):
            price_id, sep, name = entry.partition("=")
            if sep and price_id.strip() and name.strip():
                names[price_id.strip()] = name.strip()
        return names

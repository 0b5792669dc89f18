# core/settings.py
import os
from dataclasses import dataclass
from typing import List

from dotenv import load_dotenv

# Load .env once, early
load_dotenv()


def _csv_list(val: str) -> List[str]:
    """
    Turns "a,b,c" into ["a","b","c"], trimming blanks and trailing slashes.
    """
    if not val:
        return []
    return [x.strip().rstrip("/") for x in val.split(",") if x.strip()]


def _flag(name: str, default: str = "0") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class Settings:
    # ----------------------------
    # Runtime
    # ----------------------------
    ENV: str = (os.getenv("ENV") or os.getenv("ENVIRONMENT") or "dev").strip().lower()
    LOG_LEVEL: str = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()

    # ----------------------------
    # Document store
    # ----------------------------
    # "supabase" | "sql" | "memory" | "" (auto: supabase -> sql -> memory)
    STORE_BACKEND: str = (os.getenv("STORE_BACKEND") or "").strip().lower()
    DATABASE_URL: str = (os.getenv("DATABASE_URL") or "").strip()
    SUPABASE_URL: str = (os.getenv("SUPABASE_URL") or "").strip()
    SUPABASE_SERVICE_ROLE_KEY: str = (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "").strip()
    SUPABASE_STRICT: bool = _flag("SUPABASE_STRICT")

    # optimistic-lock retries before ConcurrencyConflict reaches the caller
    CONCURRENCY_MAX_RETRIES: int = int(os.getenv("CONCURRENCY_MAX_RETRIES", "5"))

    # ----------------------------
    # Inventory
    # ----------------------------
    DEFAULT_LOW_STOCK_THRESHOLD: int = int(os.getenv("DEFAULT_LOW_STOCK_THRESHOLD", "5"))

    # ----------------------------
    # Notifications / queue
    # ----------------------------
    REDIS_URL: str = (os.getenv("REDIS_URL") or "").strip()
    QUEUE_NAME: str = (os.getenv("QUEUE_NAME") or "storefront").strip()
    NOTIFY_WEBHOOK_URL: str = (os.getenv("NOTIFY_WEBHOOK_URL") or "").strip()
    NOTIFY_TIMEOUT_S: float = float(os.getenv("NOTIFY_TIMEOUT_S", "5"))
    NOTIFY_MAX_RETRIES: int = int(os.getenv("NOTIFY_MAX_RETRIES", "3"))

    # ----------------------------
    # Payments
    # ----------------------------
    PAYMENT_WEBHOOK_SECRET: str = (os.getenv("PAYMENT_WEBHOOK_SECRET") or "").strip()

    @property
    def HAS_DB(self) -> bool:
        return bool(self.DATABASE_URL)

    @property
    def HAS_SUPABASE(self) -> bool:
        return bool(self.SUPABASE_URL and self.SUPABASE_SERVICE_ROLE_KEY)

    @property
    def HAS_QUEUE(self) -> bool:
        return bool(self.REDIS_URL)

    @property
    def IS_PROD(self) -> bool:
        # DEBUG_ERRORS=1 shows error detail even in production
        if _flag("DEBUG_ERRORS"):
            return False
        return self.ENV in ("prod", "production")

    # ----------------------------
    # CORS
    # ----------------------------
    @property
    def CORS_ORIGINS(self) -> List[str]:
        """
        Override via env:
          CORS_ORIGINS="http://localhost:5173,https://admin.example.com"
        """
        env_val = (os.getenv("CORS_ORIGINS") or "").strip()
        if env_val:
            return _csv_list(env_val)

        defaults = [
            "http://localhost:5173",
            "http://localhost:3000",
        ]
        return [x.rstrip("/") for x in defaults]

    @property
    def CORS_ORIGIN_REGEX(self) -> str:
        return (os.getenv("CORS_ORIGIN_REGEX") or "").strip()


# Singleton
settings = Settings()

import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

TRUTHY = {"1", "true", "yes", "on"}


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in TRUTHY


@dataclass(frozen=True)
class Settings:
    stripe_secret_key: str | None
    stripe_webhook_secret: str | None
    jwt_secret: str | None
    fulfillment_base_url: str | None
    fulfillment_timeout: float
    auto_fulfill_on_webhook: bool
    invoice_due_days: int
    cors_origins: list[str]
    log_level: str
    log_format: str

    @classmethod
    def from_env(cls) -> "Settings":
        base_url = (os.getenv("FULFILLMENT_BASE_URL") or "").strip().rstrip("/")
        origins = os.getenv("CORS_ALLOW", "http://localhost:8888,http://localhost:3333")
        return cls(
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
            jwt_secret=os.getenv("JWT_SECRET") or None,
            fulfillment_base_url=base_url or None,
            fulfillment_timeout=float(os.getenv("FULFILLMENT_TIMEOUT", "10")),
            auto_fulfill_on_webhook=env_flag("AUTO_FULFILL_ON_WEBHOOK"),
            invoice_due_days=int(os.getenv("INVOICE_DUE_DAYS", "30")),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("LOG_FORMAT", "json").lower(),
        )


def get_settings() -> Settings:
    return Settings.from_env()

import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    def __init__(self):
        self.PROJECT_NAME = "Billing Reconciliation"
        self.PROJECT_VERSION = "1.0.0"
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        # Database
        self.POSTGRES_USER = os.getenv("POSTGRES_USER")
        self.POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD")
        self.POSTGRES_DB = os.getenv("POSTGRES_DB")
        self.POSTGRES_HOST = os.getenv("POSTGRES_HOST")
        self.POSTGRES_PORT = os.getenv("POSTGRES_PORT", "5432")

        if os.getenv("DATABASE_URL"):
            self.DATABASE_URL = os.getenv("DATABASE_URL")
        elif self.POSTGRES_HOST:
            self.DATABASE_URL = (
                f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )
        else:
            self.DATABASE_URL = "sqlite+aiosqlite:///./reconciliation.db"
        self.SQL_ECHO = _env_bool("SQL_ECHO", False)

        # Stripe
        self.STRIPE_SECRET_KEY = (
            os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or ""
        ).strip()
        self.STRIPE_WEBHOOK_SECRET = self._load_secret(
            os.getenv("STRIPE_WEBHOOK_SECRET")
        )
        self.WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))
        # fail-open: a broken dedup lookup still processes the event
        self.IDEMPOTENCY_FAIL_OPEN = _env_bool("IDEMPOTENCY_FAIL_OPEN", True)

        # Email
        self.RESEND_API_KEY = os.getenv("RESEND_API_KEY")
        self.EMAIL_FROM = os.getenv("EMAIL_FROM", "billing@example.com")

        # Operator endpoints
        self.ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN")

    @staticmethod
    def _load_secret(value: str | None) -> str | None:
        """Resolve a secret given either inline or as a path to a mounted file.

        Only the stripped contents of the file are returned when *value* names
        an existing file.
        """
        if value and os.path.isfile(value):
            try:
                with open(value, "r", encoding="utf-8") as fh:
                    return fh.read().strip()
            except OSError:
                pass
        return value.strip() if value else value

settings = Settings()

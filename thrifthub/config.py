import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"


@dataclass(frozen=True)
class Settings:
    database_url: str
    paystack_secret_key: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    paystack_timeout_seconds: float = 15.0
    app_url: str = "http://localhost:3000"
    jwt_secret: str = ""
    internal_api_key: Optional[str] = None
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    email_from: str = "ThriftHub <no-reply@thrifthub.app>"
    log_level: str = "INFO"

    @property
    def payment_callback_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/payment/verify"


def load_settings() -> Settings:
    load_dotenv(dotenv_path=ENV_PATH)

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

    return Settings(
        database_url=database_url,
        paystack_secret_key=os.getenv("PAYSTACK_SECRET_KEY", ""),
        paystack_base_url=os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co"),
        paystack_timeout_seconds=float(os.getenv("PAYSTACK_TIMEOUT_SECONDS", "15")),
        app_url=os.getenv("APP_URL", "http://localhost:3000"),
        jwt_secret=os.getenv("JWT_SECRET", ""),
        internal_api_key=os.getenv("INTERNAL_API_KEY"),
        smtp_host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
        smtp_port=int(os.getenv("SMTP_PORT", "587")),
        smtp_user=os.getenv("SMTP_USER"),
        smtp_password=os.getenv("SMTP_PASSWORD"),
        email_from=os.getenv("EMAIL_FROM", "ThriftHub <no-reply@thrifthub.app>"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )

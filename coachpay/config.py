import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env once; values are read at call time so tests can patch os.environ
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

DEFAULT_STRIPE_API_VERSION = "2023-10-16"


def database_url():
    return os.getenv("DATABASE_URL")


def stripe_secret_key():
    return os.getenv("STRIPE_SECRET_KEY")


def stripe_publishable_key():
    return os.getenv("STRIPE_PUBLISHABLE_KEY")


def stripe_webhook_secret():
    return os.getenv("STRIPE_WEBHOOK_SECRET")


def stripe_api_version():
    return os.getenv("STRIPE_API_VERSION", DEFAULT_STRIPE_API_VERSION)


def jwt_secret():
    return os.getenv("JWT_SECRET")


def cors_allow_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGIN", "*")
    return [origin.strip() for origin in raw.split(",") if origin.strip()] or ["*"]


def app_env() -> str:
    return os.getenv("APP_ENV", "development").lower()


def is_production() -> bool:
    return app_env() == "production"


def log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO" if is_production() else "DEBUG").upper()


def site_url() -> str:
    return os.getenv("SITE_URL", "http://localhost:5173").rstrip("/")


def checkout_success_url() -> str:
    return os.getenv(
        "CHECKOUT_SUCCESS_URL", f"{site_url()}/payment-success?session_id={{CHECKOUT_SESSION_ID}}"
    )


def checkout_cancel_url() -> str:
    return os.getenv("CHECKOUT_CANCEL_URL", f"{site_url()}/payment-cancelled")

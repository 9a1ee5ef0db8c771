import os
from decimal import Decimal

from services.pricing import DEFAULT_TAX_RATE

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to app.py as motorent.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "motorent.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session cookie issued by the auth service
    AUTH_COOKIE_NAME = "motorent_session"

    # 8 hours session lifetime
    SESSION_LIFETIME_SECONDS = 8 * 60 * 60

    # Idle timeout: 20 minutes
    IDLE_TIMEOUT_SECONDS = 20 * 60

    # Session/cookie security defaults
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "false").lower() == "true"
    CSRF_ENABLED = True

    # Pricing
    TAX_RATE = Decimal(os.getenv("TAX_RATE", str(DEFAULT_TAX_RATE)))  # GST
    CURRENCY = os.getenv("CURRENCY", "INR")

    # Cancellation policy (0 disables the cutoff)
    CANCEL_CUTOFF_HOURS = int(os.getenv("CANCEL_CUTOFF_HOURS", "24"))

    # Listing
    DEFAULT_PAGE_SIZE = 10
    MAX_PAGE_SIZE = 100

    # Payment gateway (Stripe)
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    PAYMENT_SIGNING_SECRET = os.getenv("PAYMENT_SIGNING_SECRET")
    PAYMENT_SIGNATURE_TOLERANCE_SECONDS = int(os.getenv("PAYMENT_SIGNATURE_TOLERANCE_SECONDS", "300"))
    GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"
    SMTP_TIMEOUT_SECONDS = float(os.getenv("SMTP_TIMEOUT_SECONDS", "10"))

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Tables come from migrations (flask db upgrade) outside of tests
    AUTO_CREATE_TABLES = False

    # Basic app settings
    DEBUG = False


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    CSRF_ENABLED = False
    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = "whsec_test"
    PAYMENT_SIGNING_SECRET = "psec_test"
    SMTP_HOST = None
    LOG_LEVEL = "DEBUG"
    AUTO_CREATE_TABLES = True

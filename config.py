import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def engine_options(database_uri: str, timeout_seconds: float) -> dict:
    """
    Short persistence timeouts so a stuck store surfaces as Unavailable
    instead of hanging the request.
    """
    if database_uri.startswith("sqlite"):
        return {"connect_args": {"timeout": timeout_seconds}}
    if database_uri.startswith("postgresql"):
        return {
            "pool_pre_ping": True,
            "pool_timeout": timeout_seconds,
            "connect_args": {"options": f"-c statement_timeout={int(timeout_seconds * 1000)}"},
        }
    return {"pool_pre_ping": True, "pool_timeout": timeout_seconds}


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to app.py as mentorslot.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "mentorslot.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Seconds; applied to the engine unless SQLALCHEMY_ENGINE_OPTIONS is set
    DB_TIMEOUT_SECONDS = float(os.getenv("DB_TIMEOUT_SECONDS", "0.5"))

    # Session cookie name for our auth token
    AUTH_COOKIE_NAME = "mentorslot_session"

    # 8 hours session lifetime
    SESSION_LIFETIME_SECONDS = 8 * 60 * 60

    # Idle timeout: 20 minutes
    IDLE_TIMEOUT_SECONDS = 20 * 60

    # Slot grid and lead time
    SLOT_DURATION_MINUTES = 30
    SLOT_LEAD_TIME_HOURS = 48

    # Mentor operating window (hours of day, end exclusive)
    OPERATING_HOURS_START = int(os.getenv("OPERATING_HOURS_START", "0"))
    OPERATING_HOURS_END = int(os.getenv("OPERATING_HOURS_END", "24"))

    # How long a slot stays held while it sits in a cart
    CART_HOLD_MINUTES = int(os.getenv("CART_HOLD_MINUTES", "15"))

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Email (SMTP) for booking notifications
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

    # Basic app settings
    DEBUG = False

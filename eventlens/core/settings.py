from typing import Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database (set via .env; avoid hardcoding secrets here)
    DATABASE_URL: str = ""  # full SQLAlchemy URL; overrides the DB_* parts below
    DB_SERVER: str = ""
    DB_NAME: str = "EventLens"
    DB_USER: str = ""
    DB_PASSWORD: str = ""
    DB_DRIVER: str = "ODBC Driver 17 for SQL Server"
    DB_PORT: int = 1433

    # Security
    SECRET_KEY: str = "CHANGE_THIS_TO_A_SECRET_KEY"
    IDENTITY_TOKEN_MAX_AGE_SECONDS: int = 60 * 60 * 24 * 7

    # Public URLs
    FRONTEND_URL: str = "http://localhost:4200"
    PUBLIC_STORAGE_BASE_URL: str = "http://localhost:8000/storage"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_CURRENCY: str = "usd"

    # PayPal
    PAYPAL_CLIENT_ID: str = ""
    PAYPAL_CLIENT_SECRET: str = ""
    PAYPAL_MODE: str = "sandbox"  # or 'live'

    # RevenueCat
    REVENUECAT_SECRET_KEY: str = ""
    REVENUECAT_API_BASE: str = "https://api.revenuecat.com/v1"

    # Payment policy
    PROVIDER_TIMEOUT_SECONDS: float = 15.0
    MIN_CHARGE_CENTS: int = 50
    PRICE_TOLERANCE_CENTS: int = 1
    TRUST_CLIENT_PRICE_WITHOUT_DISCOUNT: bool = True
    TRUST_SUBSCRIPTION_CLIENT_PRICE: bool = True
    TRUST_UPGRADE_CLIENT_PRICE: bool = True

    # Guest fallbacks when an event snapshot lacks a value
    DEFAULT_GUEST_LIMIT: int = 50
    DEFAULT_PHOTO_POOL: int = 100

    # Logging
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    LOG_JSON: bool = True
    LOG_FILE: str = "logs/app.log"
    LOG_MAX_BYTES: int = 5_000_000  # 5 MB
    LOG_BACKUP_COUNT: int = 5

    # Sentry
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.0

    # Uploads
    MAX_UPLOAD_BYTES: int = 25_000_000
    ALLOWED_UPLOAD_MIME_PREFIXES: Tuple[str, ...] = ("image/",)

    # Object storage (local filesystem if no bucket is configured)
    AWS_REGION: str = ""
    AWS_ACCESS_KEY_ID: str = ""  # Optional; uses IAM role on EC2
    AWS_SECRET_ACCESS_KEY: str = ""  # Optional; uses IAM role on EC2
    S3_UPLOADS_BUCKET: str = ""
    LOCAL_STORAGE_DIR: str = "storage"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()

# Basic validation for required settings to prevent confusing runtime errors
_missing = []
if not settings.DATABASE_URL:
    if not settings.DB_SERVER:
        _missing.append("DB_SERVER")
    if not settings.DB_USER:
        _missing.append("DB_USER")
    if not settings.DB_PASSWORD:
        _missing.append("DB_PASSWORD")
if settings.SECRET_KEY == "CHANGE_THIS_TO_A_SECRET_KEY" or not settings.SECRET_KEY:
    _missing.append("SECRET_KEY")

if _missing:
    # Do not crash imports in some tools; instead, provide a helpful message.
    import warnings

    warnings.warn(
        "Missing required settings in .env: "
        + ", ".join(_missing)
        + ". Update .env and restart the app."
    )

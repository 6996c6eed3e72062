import os
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()


def env_flag(name, default="false"):
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SECURE = env_flag("SESSION_COOKIE_SECURE")
    SESSION_COOKIE_SAMESITE = "Lax"
    # Server-side sessions are only enabled when a backend is named (e.g. "mongodb").
    SESSION_TYPE = os.getenv("SESSION_TYPE") or None

    DATABASE_PATH = os.getenv("DATABASE_PATH", "melodia.db")
    MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
    MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "melodia")

    DEMO_MODE = env_flag("DEMO_MODE")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    DISPLAY_TIMEZONE = os.getenv("DISPLAY_TIMEZONE", "Asia/Kolkata")
    PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:5000")

    GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
    GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")

    SUNO_API_URL = os.getenv("SUNO_API_URL", "https://api.sunoapi.org")
    SUNO_API_KEY = os.getenv("SUNO_API_KEY", "")
    SUNO_MODEL = os.getenv("SUNO_MODEL", "V4_5PLUS")

    RAZORPAY_API_URL = os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1")
    RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID", "")
    RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "")
    RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")
    REQUIRE_PAYMENT = env_flag("REQUIRE_PAYMENT")
    PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "INR")
    PAYMENT_DESCRIPTION = os.getenv("PAYMENT_DESCRIPTION", "Melodia Song Generation")
    PRICING_PLANS = [
        {"id": "basic", "name": "Basic", "price": 299, "description": "One personalized song"},
        {"id": "standard", "name": "Standard", "price": 499, "description": "Song with lyric revisions"},
        {"id": "premium", "name": "Premium", "price": 999, "description": "Song, revisions and priority delivery"},
    ]

    SMTP_SERVER = os.getenv("SMTP_SERVER", "smtp.gmail.com")
    SMTP_PORT = int(os.getenv("SMTP_PORT", 587))
    SMTP_USER = os.getenv("SMTP_USER", "")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
    SENDER_EMAIL = os.getenv("SENDER_EMAIL", "noreply@melodia.com")

    RATELIMIT_ENABLED = env_flag("RATELIMIT_ENABLED", "true")
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")

    OTP_EXPIRY_MINUTES = 15
    OTP_MAX_ATTEMPTS = 5

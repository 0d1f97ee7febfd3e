import os

# Environment/config
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "filereview")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

COOKIE_SECRET = os.getenv("COOKIE_SECRET", "dev-secret-change-me")
COOKIE_DOMAIN = os.getenv("COOKIE_DOMAIN") or None
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session_id")
SESSION_DAYS = int(os.getenv("SESSION_DAYS", "14"))

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "0")) or None
SMTP_USERNAME = os.getenv("SMTP_USERNAME")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_NAME = os.getenv("SMTP_NAME", "Filestage")
SMTP_TIMEOUT = float(os.getenv("SMTP_TIMEOUT", "10"))

PORT = int(os.getenv("PORT", 8000))


def is_production() -> bool:
    return ENVIRONMENT == "production"

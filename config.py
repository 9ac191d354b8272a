import os

from dotenv import load_dotenv
from passlib.context import CryptContext

load_dotenv()


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# App
APP_NAME = os.getenv("APP_NAME", "SocialApp")
APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
DEBUG = _as_bool(os.getenv("DEBUG", "false"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./app.db")

# JWT Configuration
SECRET_KEY = os.getenv("JWT_SECRET", "insecure-dev-secret")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

# Session cookie
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session_token")
SESSION_COOKIE_SECURE = _as_bool(os.getenv("SESSION_COOKIE_SECURE", "false"))
SESSION_COOKIE_SAMESITE = os.getenv("SESSION_COOKIE_SAMESITE", "lax")
SESSION_EXPIRE_DAYS = int(os.getenv("SESSION_EXPIRE_DAYS", "30"))

# Tokens and 2FA
PASSWORD_RESET_EXPIRE_MINUTES = int(os.getenv("PASSWORD_RESET_EXPIRE_MINUTES", "60"))
EMAIL_VERIFY_EXPIRE_HOURS = int(os.getenv("EMAIL_VERIFY_EXPIRE_HOURS", "24"))
BACKUP_CODE_COUNT = int(os.getenv("BACKUP_CODE_COUNT", "8"))
TOTP_VALID_WINDOW = 1

# Lockout
MAX_LOGIN_ATTEMPTS = int(os.getenv("MAX_LOGIN_ATTEMPTS", "5"))
LOCKOUT_MINUTES = int(os.getenv("LOCKOUT_MINUTES", "30"))

# Email
SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY")
EMAIL_FROM = os.getenv("EMAIL_FROM", "noreply@socialapp.com")
EMAIL_FROM_NAME = os.getenv("EMAIL_FROM_NAME", APP_NAME)


pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

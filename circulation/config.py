import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    database_pool_size: int = int(os.getenv("DATABASE_POOL_SIZE", "5"))
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "5"))

    # Lending policy
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    extension_days: int = int(os.getenv("EXTENSION_DAYS", "14"))
    reservation_days: int = int(os.getenv("RESERVATION_DAYS", "7"))
    reminder_days_ahead: int = int(os.getenv("REMINDER_DAYS_AHEAD", "1"))

    # External API settings
    openlibrary_timeout: float = float(os.getenv("OPENLIBRARY_TIMEOUT", "10"))

    # Email settings
    smtp_host: str = os.getenv("SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_username: Optional[str] = os.getenv("SMTP_USERNAME")
    smtp_password: Optional[str] = os.getenv("SMTP_PASSWORD")
    smtp_from_email: str = os.getenv("SMTP_FROM_EMAIL", "noreply@library.com")
    smtp_from_name: str = os.getenv("SMTP_FROM_NAME", "Library System")
    enable_email_notifications: bool = os.getenv("ENABLE_EMAIL_NOTIFICATIONS", "False").lower() in ("true", "1", "yes")

    # Security settings
    token_ttl_minutes: int = int(os.getenv("TOKEN_TTL_MINUTES", "1440"))  # 24 hours
    password_iterations: int = int(os.getenv("PASSWORD_ITERATIONS", "120000"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()

import os
from dataclasses import dataclass, field
from typing import List
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass
class Settings:
    # Application
    app_name: str = os.getenv("APP_NAME", "ShelfShare")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # API
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: List[str] = field(default_factory=lambda: _env_list("CORS_ORIGINS", "*"))

    # Database
    database_file: str = os.getenv("SHELFSHARE_DB_FILE", "shelfshare.db")

    # Security
    secret_key: str = os.getenv("SECRET_KEY", "change-this-secret-in-production")
    token_ttl_hours: int = int(os.getenv("TOKEN_TTL_HOURS", "24"))
    password_iterations: int = int(os.getenv("PASSWORD_ITERATIONS", "120000"))

    # Lending rules
    default_borrow_days: int = int(os.getenv("DEFAULT_BORROW_DAYS", "14"))
    max_borrow_days: int = int(os.getenv("MAX_BORROW_DAYS", "365"))
    min_access_code_length: int = int(os.getenv("MIN_ACCESS_CODE_LENGTH", "4"))

    # Seed administrator (used by `main.py seed-admin`)
    admin_name: str = os.getenv("ADMIN_NAME", "Admin")
    admin_email: str = os.getenv("ADMIN_EMAIL", "admin@mail.com")
    admin_password: str = os.getenv("ADMIN_PASSWORD", "admin123")


settings = Settings()

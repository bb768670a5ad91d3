import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: List[str] = field(
        default_factory=lambda: [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]
    )

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")

    # Security settings
    jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", "your-secret-key-change-this-in-production")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expiration_minutes: int = int(os.getenv("JWT_EXPIRATION_MINUTES", "1440"))  # 1 day

    # Circulation rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    fine_per_day: float = float(os.getenv("FINE_PER_DAY", "0.25"))
    default_borrowing_limit: int = int(os.getenv("DEFAULT_BORROWING_LIMIT", "5"))
    allow_duplicate_loans: bool = _env_bool("ALLOW_DUPLICATE_LOANS", "False")

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library System API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    environment: str = os.getenv("ENVIRONMENT", "development")
    debug: bool = _env_bool("DEBUG", "False")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Optional default avatar / cover assets
    default_avatar: str = os.getenv("DEFAULT_AVATAR", "default-avatar.png")
    default_cover: str = os.getenv("DEFAULT_COVER", "default-book-cover.jpg")

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


settings = Settings()

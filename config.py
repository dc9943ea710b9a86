import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


@dataclass(frozen=True)
class CapacityPolicy:
    """Maximum number of live edges allowed on one side of a relation."""

    mentor_students: int = 25
    mentor_classrooms: int = 5
    classroom_mentors: int = 15
    classroom_students: int = 25


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment variables with safe defaults."""

    app_name: str = "Mentorship Admin API"
    database_url: Optional[str] = None
    database_name: str = "mentorship"
    jwt_secret: str = "dev-secret-key-change-me"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    log_level: str = "INFO"
    cors_origins: Tuple[str, ...] = ("*",)
    use_transactions: bool = True
    default_page_size: int = 10
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None
    capacity: CapacityPolicy = CapacityPolicy()

    @classmethod
    def from_env(cls) -> "Settings":
        """Create Settings from environment variables."""
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            app_name=os.getenv("APP_NAME", cls.app_name),
            database_url=os.getenv("DATABASE_URL") or None,
            database_name=os.getenv("DATABASE_NAME", cls.database_name),
            jwt_secret=os.getenv("JWT_SECRET", cls.jwt_secret),
            access_token_expire_minutes=_env_int(
                "ACCESS_TOKEN_EXPIRE_MINUTES", cls.access_token_expire_minutes
            ),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
            use_transactions=_env_bool("USE_TRANSACTIONS", cls.use_transactions),
            default_page_size=_env_int("DEFAULT_PAGE_SIZE", cls.default_page_size),
            admin_email=os.getenv("ADMIN_EMAIL") or None,
            admin_password=os.getenv("ADMIN_PASSWORD") or None,
            capacity=CapacityPolicy(
                mentor_students=_env_int("MENTOR_STUDENT_LIMIT", 25),
                mentor_classrooms=_env_int("MENTOR_CLASSROOM_LIMIT", 5),
                classroom_mentors=_env_int("CLASSROOM_MENTOR_LIMIT", 15),
                classroom_students=_env_int("CLASSROOM_STUDENT_LIMIT", 25),
            ),
        )


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    return Settings.from_env()

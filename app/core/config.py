# Fichier: badgelife/backend/app/core/config.py
from pydantic_settings import BaseSettings
from typing import Optional, List
from pydantic import ValidationError, field_validator
import sys

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./badgelife_local.db"
    BACKEND_CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://localhost:8000",
        "http://127.0.0.1:5173",
    ]

    ENVIRONMENT: str = "development"

    # Performance instrumentation
    SQLALCHEMY_SLOW_QUERY_THRESHOLD_MS: int = 300

    # --- Moteur de badges ---
    # Bonus fixe accordé à un niveau "expert" (anciennement mystère/secret)
    EXPERT_BONUS_POINTS: int = 10
    # Les badges "low skill" coûtent leur valeur multipliée par ce facteur
    LOW_SKILL_MULTIPLIER: int = 2
    # Borne de l'itération des badges fantômes (par défaut: taille du catalogue)
    GHOST_MAX_ITERATIONS: Optional[int] = None
    # Nombre de soupçons à partir duquel un badge est bloqué
    SUSPICION_BLOCK_THRESHOLD: int = 3

    # --- Mode local (équivalent du localStorage côté navigateur) ---
    LOCAL_BADGES_MODE: bool = False
    LOCAL_BADGES_FILE: str = "app/data/badges.json"
    LOCAL_STORE_PATH: str = "app/data/local_store.json"

    class Config:
        env_file = ".env"

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: str) -> str:
        """Ensure Postgres URLs always use the psycopg2 driver.

        Managed Postgres providers still expose database URLs using the legacy
        ``postgres://`` scheme. SQLAlchemy no longer ships the ``postgres``
        alias, which triggers ``NoSuchModuleError`` at import time. Async
        driver variants are mapped back to psycopg2 because the badge engine
        only uses synchronous sessions. SQLite URLs are left untouched.
        """

        if not isinstance(value, str):
            return value

        replacements = {
            "postgres://": "postgresql+psycopg2://",
            "postgresql://": "postgresql+psycopg2://",
            "postgresql+asyncpg://": "postgresql+psycopg2://",
            "postgresql+psycopg://": "postgresql+psycopg2://",
            "sqlite+aiosqlite://": "sqlite://",
        }

        for prefix, target in replacements.items():
            if value.startswith(prefix):
                return target + value[len(prefix) :]

        return value

def _log_settings_validation_error(exc: ValidationError) -> None:
    """Pretty-print missing or invalid environment variables.

    When the Settings model fails to instantiate, Pydantic raises a
    ValidationError during module import, which makes the offending variable
    hard to spot. We print the structured error payload before re-raising.
    """

    header = "Configuration error while loading environment variables:"
    print(header, file=sys.stderr)

    try:
        details = exc.errors()
    except Exception:  # pragma: no cover - extremely defensive
        details = None

    if details:
        for error in details:
            location = ".".join(str(part) for part in error.get("loc", ()))
            message = error.get("msg", "Unknown validation error")
            type_name = error.get("type")
            hint_parts = [message]
            if type_name:
                hint_parts.append(f"(type={type_name})")
            hint = " ".join(hint_parts)
            print(f"  - {location}: {hint}", file=sys.stderr)
    else:
        print(exc, file=sys.stderr)


try:
    settings = Settings()
except ValidationError as exc:  # pragma: no cover - exercised at runtime
    _log_settings_validation_error(exc)
    raise

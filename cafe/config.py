"""Runtime configuration for the app, read from the environment."""
import os
from typing import NamedTuple, Optional, Tuple


class Settings(NamedTuple):
    env: str
    port: int
    database_url: str
    jwt_secret: str
    jwt_expires_in: str
    cors_origins: Tuple[str, ...]
    log_level: str


def _required(key: str, fallback: Optional[str] = None) -> str:
    value = os.getenv(key, fallback)
    if value is None or str(value).strip() == "":
        raise RuntimeError(f"Missing required environment variable: {key}")
    return value


def load_settings() -> Settings:
    origins = os.getenv("CORS_ORIGIN", "*")
    return Settings(
        env=os.getenv("ENV", "development"),
        port=int(os.getenv("PORT", "4000")),
        database_url=_required("DATABASE_URL", "sqlite:///./cafe.db"),
        jwt_secret=_required("JWT_SECRET", "change_this_secret"),
        jwt_expires_in=os.getenv("JWT_EXPIRES_IN", "7d"),
        cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


state = load_settings()


def get_settings() -> Settings:
    return state


def override(**values) -> Settings:
    """Replace individual settings at runtime (used by tests)."""
    global state
    state = state._replace(**values)
    return state

"""Runtime settings, read from the environment (and a project-level .env if present)."""

import os
from dataclasses import dataclass, field

DEFAULT_DB_PATH = "citelink.db"
DEFAULT_CORS_ORIGINS = ("http://localhost:5173",)


@dataclass(frozen=True)
class Settings:
    db_path: str = DEFAULT_DB_PATH
    cors_origins: tuple[str, ...] = field(default=DEFAULT_CORS_ORIGINS)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.environ.get("CITELINK_CORS_ORIGINS")
        return cls(
            db_path=os.environ.get("CITELINK_DB_PATH", DEFAULT_DB_PATH),
            cors_origins=(
                tuple(o.strip() for o in origins.split(",") if o.strip())
                if origins
                else DEFAULT_CORS_ORIGINS
            ),
            log_level=os.environ.get("CITELINK_LOG_LEVEL", "INFO").upper(),
        )

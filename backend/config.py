"""
ChemQuest Backend Settings
==========================
One settings object read from the environment (and an optional .env file).
Nothing here requires secrets at import time; a development JWT secret is
used when JWT_SECRET is missing and a warning is logged at startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(override=False)

BACKEND_DIR = Path(__file__).parent

DEV_JWT_SECRET = "chemquest-secret-key-change-in-production"

COOKIE_NAME = "chemquest-auth"
COOKIE_MAX_AGE = 60 * 60 * 24 * 7  # 7 days
TOKEN_LIFETIME_DAYS = 7


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _default_database_url() -> str:
    db_file = Path("./data/chemquest.db").expanduser().resolve()
    db_file.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_file.as_posix()}"


@dataclass(frozen=True)
class Settings:
    database_url: str
    jwt_secret: str
    cookie_secure: bool = False
    bcrypt_rounds: int = 12
    log_dir: Path = BACKEND_DIR / "logs"
    stream_poll_interval: float = 0.5
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    @property
    def using_dev_secret(self) -> bool:
        return self.jwt_secret == DEV_JWT_SECRET


def load_settings() -> Settings:
    origins = os.getenv("CHEMQUEST_CORS_ORIGINS", "*")
    return Settings(
        database_url=os.getenv("DATABASE_URL") or _default_database_url(),
        jwt_secret=os.getenv("JWT_SECRET") or DEV_JWT_SECRET,
        cookie_secure=_env_bool("CHEMQUEST_COOKIE_SECURE", False),
        bcrypt_rounds=_env_int("BCRYPT_ROUNDS", 12),
        log_dir=Path(os.getenv("CHEMQUEST_LOG_DIR") or BACKEND_DIR / "logs"),
        stream_poll_interval=_env_float("CHEMQUEST_POLL_INTERVAL", 0.5),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
    )


settings = load_settings()

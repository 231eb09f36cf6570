"""
Server settings, read once from the environment (and .env).

Usage:
    from gridworld.config import config

    if not config.WORLDLABS_CONFIGURED:
        print("Chunk generation disabled")

    db_path = config.DB_PATH
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("gridworld.config")

# Value shipped in .env.example; treated as "not configured".
_PLACEHOLDER_API_KEY = "your_key_here"


def _get_env(key: str, default: str = "") -> str:
    return (os.environ.get(key) or default).strip()


_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off"})


def _get_env_bool(key: str, default: bool = False) -> bool:
    flag = _get_env(key).lower()
    if flag in _TRUTHY:
        return True
    if flag in _FALSY:
        return False
    return default


def _get_env_number(key: str, default, cast):
    raw = _get_env(key)
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("[CONFIG] %s=%r is not a number, using %s", key, raw, default)
        return default


def _get_env_int(key: str, default: int = 0) -> int:
    return _get_env_number(key, default, int)


def _get_env_float(key: str, default: float = 0.0) -> float:
    return _get_env_number(key, default, float)


def _fix_postgres_url(url: str) -> str:
    """
    Normalize a Postgres DATABASE_URL.
    Some hosts hand out 'postgres://' but psycopg3 requires 'postgresql://'.
    """
    scheme, sep, rest = url.partition("://")
    if sep and scheme == "postgres":
        return f"postgresql://{rest}"
    return url


@dataclass
class Config:
    """
    Every field reads its environment variable when the instance is created,
    so tests can build a Config with explicit overrides.
    """

    # ─────────────────────────────────────────────────────────────
    # Paths
    # ─────────────────────────────────────────────────────────────
    APP_DIR: Path = field(default_factory=lambda: Path(__file__).resolve().parent.parent)
    _DATA_DIR_RAW: str = field(default_factory=lambda: _get_env("DATA_DIR"))
    _CHUNKS_DIR_RAW: str = field(default_factory=lambda: _get_env("CHUNKS_DIR"))

    @property
    def DATA_DIR(self) -> Path:
        """Directory holding the SQLite database."""
        path = Path(self._DATA_DIR_RAW) if self._DATA_DIR_RAW else self.APP_DIR / "data"
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def CHUNKS_DIR(self) -> Path:
        """Directory holding downloaded chunk assets (.spz)."""
        path = Path(self._CHUNKS_DIR_RAW) if self._CHUNKS_DIR_RAW else self.APP_DIR / "chunks"
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def DB_PATH(self) -> Path:
        """SQLite file used when DATABASE_URL is not set."""
        return self.DATA_DIR / "chunks.db"

    # ─────────────────────────────────────────────────────────────
    # Server
    # ─────────────────────────────────────────────────────────────
    PORT: int = field(default_factory=lambda: _get_env_int("PORT", 3001))
    HOST: str = field(default_factory=lambda: _get_env("HOST", "0.0.0.0"))
    DEBUG: bool = field(default_factory=lambda: _get_env_bool("FLASK_DEBUG", False))
    LOG_LEVEL: str = field(default_factory=lambda: _get_env("LOG_LEVEL", "INFO").upper())
    _ALLOWED_ORIGINS_RAW: str = field(default_factory=lambda: _get_env("ALLOWED_ORIGINS", "*"))

    @property
    def ALLOWED_ORIGINS(self) -> List[str]:
        origins = [item.strip() for item in self._ALLOWED_ORIGINS_RAW.split(",") if item.strip()]
        return origins or ["*"]

    @property
    def ALLOW_ALL_ORIGINS(self) -> bool:
        return "*" in self.ALLOWED_ORIGINS

    # ─────────────────────────────────────────────────────────────
    # Database
    # ─────────────────────────────────────────────────────────────
    _DATABASE_URL_RAW: str = field(default_factory=lambda: _get_env("DATABASE_URL"))
    DB_CONNECT_TIMEOUT: int = field(default_factory=lambda: _get_env_int("DB_CONNECT_TIMEOUT", 10))

    @property
    def DATABASE_URL(self) -> str:
        """Postgres connection URL (fixed for psycopg3 compatibility)."""
        return _fix_postgres_url(self._DATABASE_URL_RAW)

    @property
    def HAS_DATABASE(self) -> bool:
        """True if an external Postgres database is configured."""
        return bool(self._DATABASE_URL_RAW)

    # ─────────────────────────────────────────────────────────────
    # World Labs (generation provider)
    # ─────────────────────────────────────────────────────────────
    _WORLDLABS_API_KEY_RAW: str = field(default_factory=lambda: _get_env("WORLDLABS_API_KEY"))
    WORLDLABS_BASE_URL: str = field(
        default_factory=lambda: _get_env("WORLDLABS_BASE_URL", "https://api.worldlabs.ai")
    )
    WORLDLABS_MODEL: str = field(default_factory=lambda: _get_env("WORLDLABS_MODEL", "Marble 0.1-mini"))

    @property
    def WORLDLABS_API_KEY(self) -> Optional[str]:
        key = self._WORLDLABS_API_KEY_RAW
        if not key or key == _PLACEHOLDER_API_KEY:
            return None
        return key

    @property
    def WORLDLABS_CONFIGURED(self) -> bool:
        return bool(self.WORLDLABS_API_KEY)

    # ─────────────────────────────────────────────────────────────
    # Generation queue
    # ─────────────────────────────────────────────────────────────
    POLL_INTERVAL_SECS: float = field(default_factory=lambda: _get_env_float("POLL_INTERVAL_SECS", 3.0))
    MAX_CONCURRENT_GENERATIONS: int = field(
        default_factory=lambda: max(1, _get_env_int("MAX_CONCURRENT_GENERATIONS", 1))
    )
    RATE_LIMIT_BACKOFF_SECS: float = field(
        default_factory=lambda: _get_env_float("RATE_LIMIT_BACKOFF_SECS", 60.0)
    )
    # 0 disables the per-job deadline
    GENERATION_TIMEOUT_SECS: float = field(
        default_factory=lambda: _get_env_float("GENERATION_TIMEOUT_SECS", 0.0)
    )
    DEFAULT_PROMPT: str = field(
        default_factory=lambda: _get_env("DEFAULT_PROMPT", "A beautiful natural landscape")
    )

    @property
    def GENERATION_TIMEOUT(self) -> Optional[float]:
        return self.GENERATION_TIMEOUT_SECS if self.GENERATION_TIMEOUT_SECS > 0 else None

    # ─────────────────────────────────────────────────────────────
    # Logging & Debug
    # ─────────────────────────────────────────────────────────────
    def log_summary(self) -> None:
        """Log configuration summary for debugging."""
        logger.info("=" * 60)
        logger.info("[CONFIG] gridworld server configuration")
        logger.info("=" * 60)
        logger.info("  Port: %s", self.PORT)
        logger.info("  Storage: %s", "postgres" if self.HAS_DATABASE else f"sqlite ({self.DB_PATH})")
        logger.info("  Chunks dir: %s", self.CHUNKS_DIR)
        logger.info("-" * 60)
        logger.info("  World Labs configured: %s", self.WORLDLABS_CONFIGURED)
        logger.info("  World Labs model: %s", self.WORLDLABS_MODEL)
        logger.info("  Max concurrent generations: %s", self.MAX_CONCURRENT_GENERATIONS)
        logger.info("  Rate-limit backoff: %ss", self.RATE_LIMIT_BACKOFF_SECS)
        logger.info("  Generation timeout: %s", self.GENERATION_TIMEOUT or "none")
        logger.info("=" * 60)

    def validate(self) -> List[str]:
        """
        Warnings for settings the server can run without but probably should not.
        """
        warnings = []
        if not self.WORLDLABS_CONFIGURED:
            warnings.append(
                "WORLDLABS_API_KEY not set - the server will start, but chunk generation will fail"
            )
        if self.POLL_INTERVAL_SECS <= 0:
            warnings.append("POLL_INTERVAL_SECS must be positive")
        return warnings

    def to_dict(self) -> dict:
        """Settings safe to expose over /api/health (no credentials)."""
        return {
            "port": self.PORT,
            "storage": "postgres" if self.HAS_DATABASE else "sqlite",
            "worldlabs_configured": self.WORLDLABS_CONFIGURED,
            "worldlabs_model": self.WORLDLABS_MODEL,
            "max_concurrent_generations": self.MAX_CONCURRENT_GENERATIONS,
            "rate_limit_backoff_secs": self.RATE_LIMIT_BACKOFF_SECS,
            "generation_timeout_secs": self.GENERATION_TIMEOUT,
            "poll_interval_secs": self.POLL_INTERVAL_SECS,
        }


# ─────────────────────────────────────────────────────────────
# Singleton instance
# ─────────────────────────────────────────────────────────────
config = Config()

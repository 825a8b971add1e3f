import os
from pathlib import Path
from threading import Lock

DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    _instance = None
    _lock = Lock()

    def __new__(cls):
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance.load()
        return cls._instance

    def load(self):
        self.DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./signal_desk.db")
        # Empty REDIS_URL disables the read cache
        self.REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379") or None
        self.CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "300"))
        self.ENABLE_WS = _env_bool("ENABLE_WS", True)
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.MIGRATIONS_DIR = Path(os.getenv("MIGRATIONS_DIR", str(DEFAULT_MIGRATIONS_DIR)))
        self.LOGS_LIMIT = int(os.getenv("LOGS_LIMIT", "200"))

    @classmethod
    def reset(cls):
        """Drop the cached instance so the next access re-reads the environment."""
        with cls._lock:
            cls._instance = None


def get_config() -> Config:
    return Config()

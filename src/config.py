# config.py
# Runtime settings, read from environment variables with defaults.

from pathlib import Path
from typing import Mapping, Optional
import logging
import os

from pydantic import BaseModel, Field

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class Settings(BaseModel):
    """Settings for the API server, the score store and logging."""
    api_host: str = Field(default="0.0.0.0", description="Interface the HTTP server binds to.")
    api_port: int = Field(default=8000, gt=0, lt=65536, description="Port the HTTP server listens on.")
    data_dir: str = Field(default="./data", description="Directory holding the score database.")
    rate_limit: str = Field(default="100/minute", description="Per-client request limit.")
    log_level: str = Field(default="INFO", description="Root logging level.")
    leaderboard_size: int = Field(default=10, gt=0, description="Default number of leaderboard entries.")
    session_ttl: int = Field(default=3600, gt=0, description="Seconds an untouched game session is kept.")
    max_sessions: int = Field(default=10000, gt=0, description="Most game sessions held in memory at once.")

    @property
    def database_path(self) -> str:
        return str(Path(self.data_dir) / "2048.db")

    def ensure_directories(self) -> None:
        Path(self.data_dir).mkdir(parents=True, exist_ok=True)


def _int_from_env(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring %s=%r: not an integer", key, raw)
        return default


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Builds Settings from the environment.
    Args:
        environ: Mapping to read from. Defaults to os.environ.
    Returns:
        Settings: The loaded settings. Unparsable integers keep their defaults.
    """
    env = os.environ if environ is None else environ
    defaults = Settings()
    return Settings(
        api_host=env.get("API_HOST") or defaults.api_host,
        api_port=_int_from_env(env, "API_PORT", defaults.api_port),
        data_dir=env.get("DATA_DIR") or defaults.data_dir,
        rate_limit=env.get("RATE_LIMIT") or defaults.rate_limit,
        log_level=(env.get("LOG_LEVEL") or defaults.log_level).upper(),
        leaderboard_size=_int_from_env(env, "LEADERBOARD_SIZE", defaults.leaderboard_size),
        session_ttl=_int_from_env(env, "SESSION_TTL", defaults.session_ttl),
        max_sessions=_int_from_env(env, "MAX_SESSIONS", defaults.max_sessions),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)

# server/config.py
from __future__ import annotations
import os
from pathlib import Path
from typing import Optional

import tomllib
from pydantic import BaseModel, Field

DEFAULT_METRICS_URL = "sqlite+aiosqlite:///./data/metrics.db"


class Settings(BaseModel):
    """Process-wide settings, normally read from the environment."""

    metrics_database_url: str = DEFAULT_METRICS_URL
    secret_key: Optional[str] = None
    collect_interval_seconds: float = Field(60.0, gt=0)
    collect_concurrency: int = Field(4, ge=1)
    register_connect_timeout: float = Field(5.0, gt=0)
    test_connect_timeout: float = Field(3.0, gt=0)
    max_history_hours: int = Field(720, ge=1)
    recent_window_minutes: int = Field(5, ge=1)
    seed_targets_file: Optional[Path] = None
    log_level: str = "INFO"
    log_dir: Path = Path("./logs")
    sql_echo: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        env = {
            "metrics_database_url": os.getenv("METRICS_DATABASE_URL"),
            "secret_key": os.getenv("PGMON_SECRET_KEY"),
            "collect_interval_seconds": os.getenv("COLLECT_INTERVAL_SECONDS"),
            "collect_concurrency": os.getenv("COLLECT_CONCURRENCY"),
            "register_connect_timeout": os.getenv("REGISTER_CONNECT_TIMEOUT"),
            "test_connect_timeout": os.getenv("TEST_CONNECT_TIMEOUT"),
            "max_history_hours": os.getenv("MAX_HISTORY_HOURS"),
            "recent_window_minutes": os.getenv("RECENT_WINDOW_MINUTES"),
            "seed_targets_file": os.getenv("SEED_TARGETS_FILE"),
            "log_level": os.getenv("LOG_LEVEL"),
            "log_dir": os.getenv("LOG_DIR"),
        }
        values = {k: v for k, v in env.items() if v not in (None, "")}
        values["sql_echo"] = os.getenv("SQL_ECHO", "0") == "1"
        return cls(**values)

    def require_secret(self) -> str:
        if not self.secret_key:
            raise RuntimeError("PGMON_SECRET_KEY must be set to encrypt stored passwords")
        return self.secret_key


def load_seed_targets(path: Path) -> list[dict]:
    """Read `[[targets]]` entries from a TOML seed file."""
    with path.open("rb") as fh:
        data = tomllib.load(fh)
    targets = data.get("targets", [])
    if not isinstance(targets, list):
        raise ValueError(f"{path}: 'targets' must be an array of tables")
    return [t for t in targets if isinstance(t, dict)]

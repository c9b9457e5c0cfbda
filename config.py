import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        session_max_age_hours: int,
        scheduler_enabled: bool,
        scheduler_hour: int,
        scheduler_minute: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.scheduler_enabled = scheduler_enabled
        self.scheduler_hour = scheduler_hour
        self.scheduler_minute = scheduler_minute
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "Europe/Berlin")
    session_secret = os.getenv(
        "LEDGER_SESSION_SECRET",
        "3f9a1c0e7b52d48e96a0c2f1b7d4e85a6c39f0b2e1d7a4c8b5f6e3d2c1a0b9f8",
    )
    session_max_age_hours = int(os.getenv("LEDGER_SESSION_MAX_AGE_HOURS", "24"))
    scheduler_enabled = _env_flag("LEDGER_SCHEDULER_ENABLED", True)
    scheduler_hour = int(os.getenv("LEDGER_SCHEDULER_HOUR", "3"))
    scheduler_minute = int(os.getenv("LEDGER_SCHEDULER_MINUTE", "15"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        session_max_age_hours=session_max_age_hours,
        scheduler_enabled=scheduler_enabled,
        scheduler_hour=scheduler_hour,
        scheduler_minute=scheduler_minute,
        log_level=log_level,
    )

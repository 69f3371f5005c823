import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        reconcile_interval_minutes: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.reconcile_interval_minutes = reconcile_interval_minutes
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BALANCES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "balances.db"
    database_url = os.getenv("BALANCES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BALANCES_TIMEZONE", "Europe/Berlin")
    reconcile_interval_minutes = int(
        os.getenv("BALANCES_RECONCILE_INTERVAL_MINUTES", "60")
    )
    log_level = os.getenv("BALANCES_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        reconcile_interval_minutes=reconcile_interval_minutes,
        log_level=log_level,
    )

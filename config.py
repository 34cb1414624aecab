import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        currency_code: str,
        log_level: str,
        scheduler_enabled: bool,
        database_echo: bool = False,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.currency_code = currency_code
        self.log_level = log_level
        self.scheduler_enabled = scheduler_enabled
        self.database_echo = database_echo


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BARBERSHOP_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "barbershop.db"
    database_url = os.getenv("BARBERSHOP_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BARBERSHOP_TIMEZONE", "America/Bogota")
    csrf_secret = os.getenv(
        "BARBERSHOP_CSRF_SECRET",
        "3f0c9a51d2b84e7a9c6d1e2f4a5b7c8d9e0f1a2b3c4d5e6f7a8b9c0d1e2f3a4b",
    )
    currency_code = os.getenv("BARBERSHOP_CURRENCY", "COP").strip().upper()
    log_level = os.getenv("BARBERSHOP_LOG_LEVEL", "INFO").strip().upper()
    scheduler_enabled = _env_flag("BARBERSHOP_SCHEDULER_ENABLED", True)
    database_echo = _env_flag("BARBERSHOP_DATABASE_ECHO", False)
    return Settings(
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        currency_code=currency_code,
        log_level=log_level,
        scheduler_enabled=scheduler_enabled,
        database_echo=database_echo,
    )

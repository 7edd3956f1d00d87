import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        token_max_age_secs: int,
        redis_url: Optional[str],
        cache_timeout_secs: float,
        alert_horizons: tuple[int, ...],
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.token_max_age_secs = token_max_age_secs
        self.redis_url = redis_url
        self.cache_timeout_secs = cache_timeout_secs
        self.alert_horizons = alert_horizons


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_horizons(raw: str) -> tuple[int, ...]:
    horizons = {7}
    for part in raw.split(","):
        part = part.strip()
        if part:
            horizons.add(int(part))
    return tuple(sorted(horizons))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv(
        "FINANCE_DATABASE_URL", f"sqlite+aiosqlite:///{default_db}"
    )
    timezone = os.getenv("FINANCE_TIMEZONE", "Europe/Berlin")
    secret_key = os.getenv(
        "FINANCE_SECRET_KEY",
        "3f1c0d9a6b2e47c58e0b1a7d94c26f3e8b5a0c17d2e94f6a3b8c1d0e7f2a9b64",
    )
    token_max_age_secs = int(os.getenv("FINANCE_TOKEN_MAX_AGE_SECS", "86400"))
    redis_url = os.getenv("FINANCE_REDIS_URL") or None
    cache_timeout_secs = float(os.getenv("FINANCE_CACHE_TIMEOUT_SECS", "2"))
    alert_horizons = _parse_horizons(os.getenv("FINANCE_ALERT_HORIZONS", "7,14,30"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        secret_key=secret_key,
        token_max_age_secs=token_max_age_secs,
        redis_url=redis_url,
        cache_timeout_secs=cache_timeout_secs,
        alert_horizons=alert_horizons,
    )

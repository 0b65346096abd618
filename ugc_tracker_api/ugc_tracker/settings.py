from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Optional

def _env_int(key: str, default: int) -> int:
    v = os.getenv(key)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default

def _env_float(key: str, default: float) -> float:
    v = os.getenv(key)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default

@dataclass(frozen=True)
class Settings:
    # storage / db
    db_url: str
    data_dir: Path

    # apify
    apify_token: str
    apify_actor_id: str
    apify_base_url: str
    apify_poll_interval_seconds: float
    apify_max_polls: int
    apify_results_per_page: int
    request_attempts: int

    # sync
    platform: str
    sync_batch_size: int
    sync_batch_sleep_seconds: float

    # auth
    cron_secret: str
    api_key: str
    jwt_secret: str
    jwt_expires_days: int

    # payment rules
    payment_post_target: int
    payment_amount: float
    daily_post_target: int

    # web
    cors_origins: str
    static_dir: Optional[Path]

    @staticmethod
    def from_env() -> "Settings":
        static_dir = os.getenv("STATIC_DIR", "")
        return Settings(
            db_url=os.getenv("DB_URL", "sqlite:///data/ugc-tracker.db"),
            data_dir=Path(os.getenv("DATA_DIR", "data")),
            apify_token=os.getenv("APIFY_TOKEN", ""),
            apify_actor_id=os.getenv("APIFY_ACTOR_ID", ""),
            apify_base_url=os.getenv("APIFY_BASE_URL", "https://api.apify.com/v2"),
            apify_poll_interval_seconds=_env_float("APIFY_POLL_INTERVAL_SECONDS", 1.0),
            apify_max_polls=_env_int("APIFY_MAX_POLLS", 60),
            apify_results_per_page=_env_int("APIFY_RESULTS_PER_PAGE", 10),
            request_attempts=_env_int("REQUEST_ATTEMPTS", 3),
            platform=os.getenv("PLATFORM", "tiktok"),
            sync_batch_size=max(1, _env_int("SYNC_BATCH_SIZE", 10)),
            sync_batch_sleep_seconds=_env_float("SYNC_BATCH_SLEEP_SECONDS", 5.0),
            cron_secret=os.getenv("CRON_SECRET", ""),
            api_key=os.getenv("API_KEY", ""),
            jwt_secret=os.getenv("JWT_SECRET", "change-me-in-production"),
            jwt_expires_days=_env_int("JWT_EXPIRES_DAYS", 7),
            payment_post_target=max(1, _env_int("PAYMENT_POST_TARGET", 60)),
            payment_amount=_env_float("PAYMENT_AMOUNT", 500.0),
            daily_post_target=_env_int("DAILY_POST_TARGET", 2),
            cors_origins=os.getenv("CORS_ORIGINS", ""),
            static_dir=Path(static_dir) if static_dir else None,
        )

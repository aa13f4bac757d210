import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        plaid_api_base: str,
        plaid_client_id: str,
        plaid_secret: str,
        plaid_timeout_secs: float,
        plaid_lookback_days: int,
        recompute_interval_minutes: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.plaid_api_base = plaid_api_base
        self.plaid_client_id = plaid_client_id
        self.plaid_secret = plaid_secret
        self.plaid_timeout_secs = plaid_timeout_secs
        self.plaid_lookback_days = plaid_lookback_days
        self.recompute_interval_minutes = recompute_interval_minutes


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGETS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budgets.db"
    database_url = os.getenv("BUDGETS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGETS_TIMEZONE", "UTC")
    plaid_api_base = os.getenv(
        "PLAID_API_BASE", "https://sandbox.plaid.com"
    ).rstrip("/")
    plaid_client_id = os.getenv("PLAID_CLIENT_ID", "")
    plaid_secret = os.getenv("PLAID_SECRET", "")
    plaid_timeout_secs = float(os.getenv("PLAID_TIMEOUT_SECS", "10"))
    plaid_lookback_days = int(os.getenv("PLAID_LOOKBACK_DAYS", "365"))
    recompute_interval_minutes = int(
        os.getenv("BUDGETS_RECOMPUTE_INTERVAL_MINUTES", "60")
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        plaid_api_base=plaid_api_base,
        plaid_client_id=plaid_client_id,
        plaid_secret=plaid_secret,
        plaid_timeout_secs=plaid_timeout_secs,
        plaid_lookback_days=plaid_lookback_days,
        recompute_interval_minutes=recompute_interval_minutes,
    )

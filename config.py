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
        gemini_api_key: str,
        gemini_model: str,
        rate_limit_capacity: int,
        rate_limit_refill_secs: float,
        blocked_users: frozenset[str],
        page_size: int,
        max_page_size: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.rate_limit_capacity = rate_limit_capacity
        self.rate_limit_refill_secs = rate_limit_refill_secs
        self.blocked_users = blocked_users
        self.page_size = page_size
        self.max_page_size = max_page_size
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _split_csv(raw: str) -> frozenset[str]:
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("FINANCE_DATABASE_URL")
    if not database_url:
        default_db = _ensure_data_dir() / "finance.db"
        database_url = f"sqlite:///{default_db}"
    session_secret = os.getenv(
        "FINANCE_SESSION_SECRET",
        "3f0c9a1d6b2e4f8a7c5d0e9b1a2f3c4d5e6f7a8b9c0d1e2f3a4b5c6d7e8f9a0b",
    )
    return Settings(
        database_url=database_url,
        timezone=os.getenv("FINANCE_TIMEZONE", "UTC"),
        session_secret=session_secret,
        session_max_age_hours=int(os.getenv("FINANCE_SESSION_MAX_AGE_HOURS", "24")),
        gemini_api_key=os.getenv("FINANCE_GEMINI_API_KEY", ""),
        gemini_model=os.getenv("FINANCE_GEMINI_MODEL", "gemini-1.5-flash"),
        rate_limit_capacity=int(os.getenv("FINANCE_RATE_LIMIT_CAPACITY", "10")),
        rate_limit_refill_secs=float(
            os.getenv("FINANCE_RATE_LIMIT_REFILL_SECS", "3600")
        ),
        blocked_users=_split_csv(os.getenv("FINANCE_BLOCKED_USERS", "")),
        page_size=int(os.getenv("FINANCE_PAGE_SIZE", "50")),
        max_page_size=int(os.getenv("FINANCE_MAX_PAGE_SIZE", "500")),
        log_level=os.getenv("FINANCE_LOG_LEVEL", "INFO").upper(),
    )

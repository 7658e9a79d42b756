import logging
import threading
from datetime import datetime, timezone
from typing import Optional


logger = logging.getLogger(__name__)

DASHBOARD_PATH = "/dashboard"


def account_path(account_id: int) -> str:
    return f"/account/{account_id}"


class ViewInvalidator:
    """Tracks which rendered views need a refetch after a mutation."""

    def __init__(self) -> None:
        self._stale: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def revalidate_path(self, path: str) -> None:
        with self._lock:
            self._stale[path] = datetime.now(timezone.utc)
        logger.info(f"view_invalidated: path={path}")

    def is_stale(self, path: str) -> bool:
        with self._lock:
            return path in self._stale

    def stale_since(self, path: str) -> Optional[datetime]:
        with self._lock:
            return self._stale.get(path)

    def mark_fresh(self, path: str) -> None:
        with self._lock:
            self._stale.pop(path, None)

    def stale_paths(self) -> list[str]:
        with self._lock:
            return sorted(self._stale)

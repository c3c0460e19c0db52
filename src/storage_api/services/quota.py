"""Per-user storage usage cache and quota checks."""

import logging
import threading
import time
from typing import Callable, Dict, NamedTuple, Optional

from storage_api.database.local import DEFAULT_DB_PATH, get_total_storage_used, get_user
from storage_api.errors import ResourceNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_QUOTA_BYTES = 1073741824  # 1 GiB

BYTE_UNITS = ("B", "KB", "MB", "GB", "TB")


class _CacheEntry(NamedTuple):
    used_bytes: int
    stored_at: float
    generation: tuple


def format_bytes(num_bytes: Optional[int]) -> str:
    """Human readable size, e.g. ``1.50 MB``."""
    if not num_bytes:
        return "0 B"
    size = float(num_bytes)
    unit_index = 0
    while size >= 1024 and unit_index < len(BYTE_UNITS) - 1:
        size /= 1024
        unit_index += 1
    return f"{size:.2f} {BYTE_UNITS[unit_index]}"


class StorageQuotaService:
    """
    Process-wide cache of each user's stored byte total.

    Every operation that changes a user's total (upload confirm, delete,
    bulk delete) calls ``invalidate`` once its database write has committed.
    A cache miss computes the total outside the lock; if an invalidation for
    the same user lands while that computation runs, the computed value is
    returned to the caller but not stored, so the next read recomputes.

    ``ttl_seconds`` only bounds how stale an entry can get if an invalidation
    were ever missed.
    """

    def __init__(self,
                 db_path: str = DEFAULT_DB_PATH,
                 default_quota_bytes: int = DEFAULT_QUOTA_BYTES,
                 ttl_seconds: Optional[float] = None,
                 usage_loader: Optional[Callable[[int], int]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.db_path = db_path
        self.default_quota_bytes = default_quota_bytes
        self.ttl_seconds = ttl_seconds
        self._load_usage = usage_loader or (lambda user_id: get_total_storage_used(user_id, db_path=self.db_path))
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[int, _CacheEntry] = {}
        self._generations: Dict[int, int] = {}
        self._epoch = 0

    def _generation(self, user_id: int) -> tuple:
        return (self._epoch, self._generations.get(user_id, 0))

    def _is_fresh(self, entry: _CacheEntry) -> bool:
        if self.ttl_seconds is None:
            return True
        return self._clock() - entry.stored_at < self.ttl_seconds

    def get_used_bytes(self, user_id: int) -> int:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is not None and self._is_fresh(entry):
                return entry.used_bytes
            generation = self._generation(user_id)

        logger.debug(f"Cache miss - querying storage used by user {user_id}")
        used = int(self._load_usage(user_id) or 0)

        with self._lock:
            if self._generation(user_id) == generation:
                self._entries[user_id] = _CacheEntry(used, self._clock(), generation)
            else:
                logger.debug(f"Storage total for user {user_id} changed while loading; not caching")
        return used

    def invalidate(self, user_id: int) -> None:
        with self._lock:
            self._entries.pop(user_id, None)
            self._generations[user_id] = self._generations.get(user_id, 0) + 1
        logger.debug(f"Invalidated storage cache for user {user_id}")

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()
            self._epoch += 1
        logger.info("Invalidated all storage quota caches")

    def quota_for(self, user_id: int) -> int:
        """The user's quota, falling back to the configured default when unset."""
        user = get_user(user_id, db_path=self.db_path)
        if user is None:
            raise ResourceNotFoundError(user_id, kind="User")
        if user["storage_quota"] is None:
            logger.warning(f"User {user_id} has no storage quota set, using default {format_bytes(self.default_quota_bytes)}")
            return self.default_quota_bytes
        return int(user["storage_quota"])

    def has_space(self, user_id: int, additional_bytes: int) -> bool:
        used = self.get_used_bytes(user_id)
        quota = self.quota_for(user_id)
        has_space = used + additional_bytes <= quota
        if not has_space:
            logger.debug(
                f"Storage check failed for user {user_id}: used={used}, required={additional_bytes}, quota={quota}"
            )
        return has_space

    def remaining(self, user_id: int) -> int:
        return max(0, self.quota_for(user_id) - self.get_used_bytes(user_id))

    format_bytes = staticmethod(format_bytes)

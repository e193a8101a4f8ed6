"""Per-admin item quota for bulk submissions.

Each admin may submit at most ``items_per_minute`` items of a given operation
type within a sliding window. Request counts are limited separately by slowapi.
"""
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

from homeadmin.backend.core.bulk.registry import get_operation

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0
DEFAULT_ITEMS_PER_WINDOW = 1000


class ItemQuota:
    """In-memory sliding window of submitted item counts per (admin, type)."""

    def __init__(self, window: float = WINDOW_SECONDS, clock: Callable[[], float] = time.monotonic):
        self._window = window
        self._clock = clock
        self._entries: Dict[Tuple[str, str], Deque[Tuple[float, int]]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def limit_for(op_type: str) -> int:
        descriptor = get_operation(op_type)
        return descriptor.items_per_minute if descriptor else DEFAULT_ITEMS_PER_WINDOW

    def usage(self, admin_id: str, op_type: str) -> int:
        """Items submitted by an admin for a type within the current window."""
        with self._lock:
            return self._usage(admin_id, op_type, self._clock())

    def reserve(self, admin_id: str, op_type: str, count: int) -> Optional[str]:
        """Charge ``count`` items to the admin's window.

        Returns a rejection reason when the quota would be exceeded; nothing
        is charged in that case.
        """
        limit = self.limit_for(op_type)
        with self._lock:
            now = self._clock()
            used = self._usage(admin_id, op_type, now)
            if used + count > limit:
                logger.warning(
                    "Bulk %s quota exceeded for admin %s: %d used, %d requested, %d allowed",
                    op_type, admin_id, used, count, limit,
                )
                return (
                    f"rate limit exceeded for {op_type} operations: "
                    f"maximum {limit} items per minute, current usage {used}, requested {count}"
                )
            self._entries.setdefault((admin_id, op_type), deque()).append((now, count))
            return None

    def _usage(self, admin_id: str, op_type: str, now: float) -> int:
        """Drop expired entries and sum the rest (called under lock)."""
        key = (admin_id, op_type)
        entries = self._entries.get(key)
        if not entries:
            return 0
        cutoff = now - self._window
        while entries and entries[0][0] <= cutoff:
            entries.popleft()
        if not entries:
            del self._entries[key]
            return 0
        return sum(count for _, count in entries)

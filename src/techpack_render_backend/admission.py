"""
Request admission control.

Fixed-window request counters per (caller identity, request class). Each
request class (single, bulk, preview) has its own window length and maximum.
A rejected request is never queued: the caller gets the remaining window time
as a retry-after hint.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Tuple

from .errors import AdmissionRejectedError

logger = logging.getLogger(__name__)

REQUEST_CLASSES = ("single", "bulk", "preview")


@dataclass(frozen=True)
class Admission:
    admitted: bool
    retry_after: float = 0.0
    remaining: int = 0


class InMemoryBudgetStore:
    """
    Counter store for rate budgets.

    Maps (identity, request_class) to (count, window_start). Increments are
    atomic under a mutex so concurrent requests for one identity never lose
    updates.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self._requests: Dict[Tuple[str, str], Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def increment(self, key: Tuple[str, str], window_sec: float, limit: int) -> Tuple[bool, int, float]:
        """
        Count one request against a budget if it still has room.

        Returns:
            Tuple of (admitted, count in the current window, window start)
        """
        with self._lock:
            now = self.clock()
            count, start_time = self._requests.get(key, (0, now))
            if now - start_time >= window_sec:
                count, start_time = 0, now
            if count >= limit:
                self._requests[key] = (count, start_time)
                return False, count, start_time
            self._requests[key] = (count + 1, start_time)
            return True, count + 1, start_time

    def cleanup(self, max_window_sec: float) -> int:
        """Drop counters whose window has expired. Returns how many were removed."""
        with self._lock:
            now = self.clock()
            expired = [key for key, (_, start) in self._requests.items() if now - start >= max_window_sec]
            for key in expired:
                del self._requests[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._requests)


class AdmissionController:
    """
    Guards the generation entry points with per-identity budgets.

    Args:
        budgets: request class -> object with window_sec and max_requests
        store: Counter store, a fresh InMemoryBudgetStore when omitted
        sweep_threshold: Counter count above which expired windows are dropped
    """

    def __init__(
        self,
        budgets: Mapping[str, object],
        store: Optional[InMemoryBudgetStore] = None,
        sweep_threshold: int = 10000,
    ) -> None:
        missing = [name for name in REQUEST_CLASSES if name not in budgets]
        if missing:
            raise ValueError(f"Missing admission budgets for: {', '.join(missing)}")
        self._budgets = dict(budgets)
        self._store = store if store is not None else InMemoryBudgetStore()
        self._sweep_threshold = sweep_threshold

    def try_admit(self, identity: str, request_class: str) -> Admission:
        budget = self._budgets.get(request_class)
        if budget is None:
            raise ValueError(f"Unknown request class: {request_class}")
        if len(self._store) > self._sweep_threshold:
            self.cleanup()

        window_sec = float(budget.window_sec)
        limit = int(budget.max_requests)
        admitted, count, start_time = self._store.increment((identity, request_class), window_sec, limit)
        if admitted:
            return Admission(admitted=True, remaining=max(0, limit - count))

        retry_after = max(0.0, start_time + window_sec - self._store.clock())
        return Admission(admitted=False, retry_after=retry_after)

    def admit(self, identity: str, request_class: str) -> None:
        """
        Raise when the caller has exhausted the budget of a request class.

        Raises:
            AdmissionRejectedError: Carrying the seconds until the window rolls over
        """
        decision = self.try_admit(identity, request_class)
        if decision.admitted:
            return
        retry_after = math.ceil(decision.retry_after)
        logger.warning(f"Admission rejected for {identity} ({request_class}); retry after {retry_after}s")
        raise AdmissionRejectedError(
            f"Too many {request_class} requests, try again in {retry_after}s",
            identity=identity,
            request_class=request_class,
            retry_after=retry_after,
        )

    def cleanup(self) -> int:
        longest = max(float(budget.window_sec) for budget in self._budgets.values())
        return self._store.cleanup(longest)

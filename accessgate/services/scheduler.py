"""Expiry scheduling on a single min-heap.

Each MAC has at most one live deadline. Scheduling a MAC again replaces its
deadline in one step under the lock; superseded heap entries are skipped
when they surface, so a stale deadline can never fire.
"""

import heapq
import itertools
import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ExpiryScheduler:
    """Fires ``callback(mac)`` once the clock passes a MAC's deadline."""

    def __init__(
        self,
        callback: Callable[[str], None],
        clock: Callable[[], datetime],
        max_wait: float = 1.0,
    ):
        self._callback = callback
        self._clock = clock
        # bounds each sleep so wall-clock jumps are noticed promptly
        self._max_wait = max_wait
        self._heap: List[Tuple[datetime, int, str]] = []
        self._live: Dict[str, Tuple[datetime, int]] = {}
        self._counter = itertools.count()
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def schedule(self, mac_address: str, deadline: datetime) -> None:
        with self._cond:
            seq = next(self._counter)
            self._live[mac_address] = (deadline, seq)
            heapq.heappush(self._heap, (deadline, seq, mac_address))
            self._cond.notify()

    def cancel(self, mac_address: str) -> bool:
        with self._cond:
            return self._live.pop(mac_address, None) is not None

    def deadline(self, mac_address: str) -> Optional[datetime]:
        with self._cond:
            entry = self._live.get(mac_address)
            return entry[0] if entry else None

    def clear(self) -> None:
        with self._cond:
            self._live.clear()
            self._heap.clear()

    def _pop_due(self, now: datetime) -> List[str]:
        due = []
        while self._heap and self._heap[0][0] <= now:
            deadline, seq, mac = heapq.heappop(self._heap)
            if self._live.get(mac) == (deadline, seq):
                del self._live[mac]
                due.append(mac)
        return due

    def _seconds_until_next(self, now: datetime) -> float:
        while self._heap:
            deadline, seq, mac = self._heap[0]
            if self._live.get(mac) != (deadline, seq):
                heapq.heappop(self._heap)
                continue
            return max(0.0, min(self._max_wait, (deadline - now).total_seconds()))
        return self._max_wait

    def run_pending(self) -> List[str]:
        """Fire every deadline that has passed; returns the MACs fired."""
        with self._cond:
            due = self._pop_due(self._clock())
        for mac in due:
            try:
                self._callback(mac)
            except Exception:
                logger.exception("Expiry handler failed for %s", mac)
        return due

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            with self._cond:
                self._cond.wait(self._seconds_until_next(self._clock()))
            if not self._stop.is_set():
                self.run_pending()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="ExpiryScheduler", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
        thread = self._thread
        if thread:
            thread.join()
        self._thread = None

"""Runtime session state: the session value type and the owned session table."""

import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class AccessSession:
    """Access-control state for one device."""

    mac_address: str
    start_time: datetime
    end_time: datetime
    pesos: int = 0
    minutes: int = 0
    ip_address: Optional[str] = None
    active: bool = True
    paused: bool = False
    paused_at: Optional[datetime] = None
    paused_duration: float = 0.0

    def time_remaining(self, now: datetime) -> int:
        """Whole seconds of access left; frozen at the pause instant while paused."""
        if not self.active:
            return 0
        reference = self.paused_at if self.paused and self.paused_at else now
        return max(0, int((self.end_time - reference).total_seconds()))

    def is_expired(self, now: datetime) -> bool:
        if self.paused:
            return self.paused_at is not None and self.end_time <= self.paused_at
        return self.end_time <= now

    def copy(self) -> "AccessSession":
        return replace(self)


class SessionTable:
    """In-memory map of active sessions keyed by normalized MAC.

    The table hands out copies, so a caller can only change a session by
    putting it back. ``lock_for`` holds the per-MAC lock that serializes
    every transition of one device; different devices never share a lock.
    A device's lock is dropped once no thread holds or waits for it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, AccessSession] = {}
        self._ip_index: Dict[str, str] = {}
        # mac -> [lock, number of holders and waiters]
        self._mac_locks: Dict[str, list] = {}

    @contextmanager
    def lock_for(self, mac_address: str) -> Iterator[None]:
        with self._lock:
            entry = self._mac_locks.get(mac_address)
            if entry is None:
                entry = self._mac_locks[mac_address] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._mac_locks[mac_address]

    def lock_count(self) -> int:
        with self._lock:
            return len(self._mac_locks)

    def get(self, mac_address: str) -> Optional[AccessSession]:
        with self._lock:
            session = self._sessions.get(mac_address)
            return session.copy() if session else None

    def put(self, session: AccessSession) -> None:
        with self._lock:
            old = self._sessions.get(session.mac_address)
            if old and old.ip_address and self._ip_index.get(old.ip_address) == old.mac_address:
                del self._ip_index[old.ip_address]
            self._sessions[session.mac_address] = session.copy()
            if session.ip_address:
                self._ip_index[session.ip_address] = session.mac_address

    def pop(self, mac_address: str) -> Optional[AccessSession]:
        with self._lock:
            session = self._sessions.pop(mac_address, None)
            if session and session.ip_address and self._ip_index.get(session.ip_address) == mac_address:
                del self._ip_index[session.ip_address]
            return session

    def find_by_ip(self, ip_address: str) -> Optional[AccessSession]:
        with self._lock:
            mac = self._ip_index.get(ip_address)
            session = self._sessions.get(mac) if mac else None
            return session.copy() if session else None

    def macs(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def snapshot(self) -> List[AccessSession]:
        with self._lock:
            return [s.copy() for s in self._sessions.values()]

    def __contains__(self, mac_address) -> bool:
        with self._lock:
            return mac_address in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

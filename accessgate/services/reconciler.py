"""Periodic repair of drift between storage, memory and the firewall.

Storage is the source of truth for which sessions exist; the firewall must
follow each session's pause flag. One pass runs four steps, each touching a
device only under that device's lock:

1. restore persisted, unexpired sessions missing from memory
2. end in-memory sessions that storage no longer holds as active
3. re-apply rules where the live firewall disagrees with a session
4. block devices holding allow rules without an un-paused session

Errors are logged per device and the pass continues; nothing is raised.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from accessgate.errors import AccessControlError, DriverError, PersistenceError
from accessgate.services.session_manager import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    restored: List[str] = field(default_factory=list)
    ghosts_ended: List[str] = field(default_factory=list)
    firewall_corrections: List[str] = field(default_factory=list)
    orphans_blocked: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def changes(self) -> int:
        return (
            len(self.restored)
            + len(self.ghosts_ended)
            + len(self.firewall_corrections)
            + len(self.orphans_blocked)
        )


class Reconciler:
    """Bring memory and the firewall back in line with storage."""

    def __init__(self, manager: SessionManager):
        self.manager = manager

    def _fail(self, report: ReconciliationReport, mac: str, step: str, error: Exception) -> None:
        logger.error("Reconciliation %s failed for %s: %s", step, mac, error)
        report.errors.append(f"{step} {mac}: {error}")

    def _restore_missing(self, report: ReconciliationReport) -> None:
        manager = self.manager
        for persisted in manager.store.get_active_sessions():
            mac = persisted.mac_address
            if mac in manager.table:
                continue
            try:
                with manager.lock_for(mac):
                    fresh = manager.store.get_active_session(mac)
                    if fresh is None or mac in manager.table:
                        continue
                    if fresh.is_expired(manager.clock()):
                        manager.end(mac, reason="expired before reconciliation")
                        continue
                    if manager.restore(fresh):
                        logger.warning("Reconciliation restored missing session for %s", mac)
                        report.restored.append(mac)
            except AccessControlError as e:
                self._fail(report, mac, "restore", e)

    def _end_ghosts(self, report: ReconciliationReport) -> None:
        manager = self.manager
        for mac in manager.table.macs():
            try:
                with manager.lock_for(mac):
                    if mac not in manager.table:
                        continue
                    if manager.store.get_active_session(mac) is not None:
                        continue
                    logger.warning("Ending session for %s: no active record in storage", mac)
                    report.ghosts_ended.append(mac)
                    manager.end(mac, reason="removed (no persisted record)")
            except AccessControlError as e:
                self._fail(report, mac, "ghost cleanup", e)

    def _heal_firewall(self, report: ReconciliationReport) -> None:
        manager = self.manager
        for snapshot in manager.table.snapshot():
            mac = snapshot.mac_address
            try:
                with manager.lock_for(mac):
                    session = manager.table.get(mac)
                    if session is None:
                        continue
                    before = manager.driver.is_allowed(mac)
                    if before != session.paused:
                        continue
                    after = manager.apply_firewall(session)
                    logger.warning(
                        "Self-healing firewall for %s: paused=%s, allowed before=%s after=%s",
                        mac, session.paused, before, after.is_allowed,
                    )
                    report.firewall_corrections.append(mac)
            except AccessControlError as e:
                self._fail(report, mac, "firewall repair", e)

    def _block_orphans(self, report: ReconciliationReport) -> None:
        manager = self.manager
        for mac in sorted(manager.driver.allowed_macs()):
            try:
                with manager.lock_for(mac):
                    session = manager.table.get(mac)
                    if session is not None and not session.paused:
                        continue
                    if session is None:
                        manager.driver.block(mac)
                    else:
                        manager.apply_firewall(session)
                    logger.warning("Blocked %s: allow rule without an active session", mac)
                    report.orphans_blocked.append(mac)
            except AccessControlError as e:
                self._fail(report, mac, "orphan block", e)

    def run_once(self) -> ReconciliationReport:
        report = ReconciliationReport()
        try:
            self._restore_missing(report)
            self._end_ghosts(report)
        except PersistenceError as e:
            self._fail(report, "*", "storage read", e)
        self._heal_firewall(report)
        try:
            self._block_orphans(report)
        except DriverError as e:
            self._fail(report, "*", "firewall read", e)
        if report.changes or report.errors:
            logger.info(
                "Reconciliation: %d restored, %d ghosts ended, %d corrected, "
                "%d orphans blocked, %d errors",
                len(report.restored), len(report.ghosts_ended),
                len(report.firewall_corrections), len(report.orphans_blocked),
                len(report.errors),
            )
        return report


class ReconciliationWorker:
    """Background thread: expiry sweep followed by a reconciliation pass."""

    def __init__(self, manager: SessionManager, reconciler: Reconciler, interval_seconds: float = 60.0):
        self._manager = manager
        self._reconciler = reconciler
        self._interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_cycle(self) -> Optional[ReconciliationReport]:
        try:
            self._manager.sweep_expired()
        except PersistenceError as e:
            logger.error("Expiry sweep failed: %s", e)
        try:
            return self._reconciler.run_once()
        except Exception:
            logger.exception("Reconciliation pass crashed")
            return None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="ReconciliationWorker", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread:
            thread.join()
        self._thread = None

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self._interval_seconds):
            self.run_cycle()

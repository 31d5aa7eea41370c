"""Session lifecycle management.

The manager owns the runtime session table and the expiry scheduler and is
the only component that changes a session. Each transition runs under the
device's own lock in a fixed order: validate, persist, update memory,
(re)schedule the expiry, then apply and verify the firewall effect. A
storage failure aborts the transition before memory is touched.

Firewall failures are handled per transition:

- ``start``/``extend``/``update_ip_mapping`` keep the committed session and
  raise ``EnforcementFailed`` carrying it; the reconciler re-applies the
  rules on its next pass.
- ``pause``/``resume`` roll back to the previous state and raise
  ``EnforcementFailed``.
- ``end`` keeps the session ended and raises ``EnforcementFailed``; the
  reconciler blocks any device left holding allow rules.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from accessgate.errors import (
    AccessControlError,
    DriverError,
    DuplicateSession,
    EnforcementFailed,
    InvalidSessionState,
    PersistenceError,
    SessionNotFound,
)
from accessgate.services.addressing import normalize_ip, normalize_mac
from accessgate.services.firewall import FirewallDriver, FirewallStatus
from accessgate.services.persistence import SessionStore
from accessgate.services.runtime import AccessSession, SessionTable, utcnow
from accessgate.services.scheduler import ExpiryScheduler

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    restored: int = 0
    expired: int = 0
    failed: int = 0


@dataclass
class EngineStats:
    total_sessions: int
    active_sessions: int
    paused_sessions: int
    total_revenue: int
    average_session_minutes: float


class SessionManager:
    """Start, extend, pause, resume and end device sessions."""

    def __init__(
        self,
        store: SessionStore,
        driver: FirewallDriver,
        table: Optional[SessionTable] = None,
        clock: Callable[[], datetime] = utcnow,
        scheduler: Optional[ExpiryScheduler] = None,
    ):
        self.store = store
        self.driver = driver
        self.table = table if table is not None else SessionTable()
        self.clock = clock
        self.scheduler = scheduler or ExpiryScheduler(self._expire, clock)

    def lock_for(self, mac_address: str):
        return self.table.lock_for(mac_address)

    # -- helpers -------------------------------------------------------------

    def _persist(self, mac: str, **fields) -> None:
        if not self.store.update_session(mac, **fields):
            raise PersistenceError(f"No active session record for {mac}")

    def apply_firewall(self, session: AccessSession) -> FirewallStatus:
        """Make the rule state match the session's pause flag."""
        if session.paused:
            return self.driver.block(session.mac_address, session.ip_address)
        return self.driver.allow(session.mac_address, session.ip_address)

    def _enforce_committed(self, session: AccessSession, action: str) -> None:
        try:
            self.apply_firewall(session)
        except DriverError as e:
            logger.error(
                "%s for %s committed but firewall not confirmed, left for "
                "reconciliation: %s", action, session.mac_address, e,
            )
            raise EnforcementFailed(
                session.mac_address, f"{action} committed, firewall pending: {e}",
                session=session.copy(),
            )

    def _rollback(self, previous: AccessSession, action: str) -> None:
        mac = previous.mac_address
        try:
            self._persist(
                mac,
                paused=previous.paused,
                paused_at=previous.paused_at,
                paused_duration=previous.paused_duration,
                end_time=previous.end_time,
            )
        except PersistenceError as e:
            logger.error("Rollback of %s for %s could not be persisted: %s", action, mac, e)
        self.table.put(previous)
        if previous.paused:
            self.scheduler.cancel(mac)
        else:
            self.scheduler.schedule(mac, previous.end_time)
        try:
            self.apply_firewall(previous)
        except DriverError as e:
            logger.error(
                "Rollback of %s for %s could not restore firewall state: %s", action, mac, e
            )

    # -- transitions ---------------------------------------------------------

    def start(self, mac_address: str, pesos: int, ip_address: Optional[str] = None) -> AccessSession:
        """Start a paid session; minutes come from the rate table.

        Raises:
            ValueError: Malformed MAC/IP or non-positive pesos.
            DuplicateSession: The device already has an active session.
            PersistenceError: The record could not be stored.
            EnforcementFailed: Stored and scheduled, but access not confirmed.
        """
        mac = normalize_mac(mac_address)
        ip = normalize_ip(ip_address)
        if pesos <= 0:
            raise ValueError("pesos must be a positive number")
        minutes = self.store.get_rates().minutes_for(pesos)
        return self._open(mac, pesos, minutes, ip)

    def start_timed(self, mac_address: str, minutes: int, ip_address: Optional[str] = None) -> AccessSession:
        """Start a session for a fixed number of minutes (voucher redemption)."""
        mac = normalize_mac(mac_address)
        ip = normalize_ip(ip_address)
        if minutes <= 0:
            raise ValueError("minutes must be a positive number")
        return self._open(mac, 0, minutes, ip)

    def _open(self, mac: str, pesos: int, minutes: int, ip: Optional[str]) -> AccessSession:
        with self.lock_for(mac):
            if mac in self.table:
                raise DuplicateSession(mac)
            now = self.clock()
            persisted = self.store.get_active_session(mac)
            if persisted is not None:
                if not persisted.is_expired(now):
                    raise DuplicateSession(mac)
                self._persist(mac, active=False)
                logger.info("Finalized stale record for %s before starting anew", mac)

            session = AccessSession(
                mac_address=mac,
                ip_address=ip,
                start_time=now,
                end_time=now + timedelta(minutes=minutes),
                pesos=pesos,
                minutes=minutes,
            )
            self.store.add_session(session)
            self.table.put(session)
            self.scheduler.schedule(mac, session.end_time)
            logger.info(
                "Session started for %s (ip=%s): %d pesos = %d minutes, ends %s",
                mac, ip or "-", pesos, minutes, session.end_time.isoformat(),
            )
            self._enforce_committed(session, "start")
            return session.copy()

    def apply_credit(
        self, mac_address: str, pesos: int, ip_address: Optional[str] = None
    ) -> Tuple[AccessSession, str]:
        """Consume a credit event: extend the active session or start one.

        Returns the session and ``"extended"`` or ``"started"``.
        """
        mac = normalize_mac(mac_address)
        if pesos <= 0:
            raise ValueError("pesos must be a positive number")
        with self.lock_for(mac):
            if mac in self.table:
                minutes = self.store.get_rates().minutes_for(pesos)
                return self.extend(mac, minutes, pesos=pesos), "extended"
            return self.start(mac, pesos, ip_address), "started"

    def extend(self, mac_address: str, additional_minutes: int, pesos: int = 0) -> AccessSession:
        """Push the end time forward and replace the pending expiry.

        Raises:
            SessionNotFound: No active session for the device.
            PersistenceError: The change could not be stored.
        """
        mac = normalize_mac(mac_address)
        if additional_minutes <= 0:
            raise ValueError("additional_minutes must be a positive number")
        with self.lock_for(mac):
            session = self.table.get(mac)
            if session is None or not session.active:
                raise SessionNotFound(mac)
            updated = session.copy()
            updated.end_time = session.end_time + timedelta(minutes=additional_minutes)
            updated.minutes = session.minutes + additional_minutes
            updated.pesos = session.pesos + pesos
            self._persist(mac, end_time=updated.end_time, minutes=updated.minutes, pesos=updated.pesos)
            self.table.put(updated)
            if not updated.paused:
                self.scheduler.schedule(mac, updated.end_time)
            logger.info(
                "Session extended for %s: +%d minutes, ends %s",
                mac, additional_minutes, updated.end_time.isoformat(),
            )
            return updated.copy()

    def pause(self, mac_address: str) -> AccessSession:
        """Freeze the countdown and block the device.

        Raises:
            SessionNotFound: No active session for the device.
            InvalidSessionState: The session is already paused.
            EnforcementFailed: The block could not be confirmed; the pause
                was rolled back.
        """
        mac = normalize_mac(mac_address)
        with self.lock_for(mac):
            session = self.table.get(mac)
            if session is None or not session.active:
                raise SessionNotFound(mac)
            if session.paused:
                raise InvalidSessionState(mac, "already paused")

            updated = session.copy()
            updated.paused = True
            updated.paused_at = self.clock()
            self._persist(mac, paused=True, paused_at=updated.paused_at)
            self.table.put(updated)
            self.scheduler.cancel(mac)

            try:
                self.driver.block(mac, updated.ip_address)
            except DriverError as e:
                logger.error("Pause for %s failed to block access: %s", mac, e)
                self._rollback(session, "pause")
                raise EnforcementFailed(mac, f"access still allowed after pause: {e}")
            logger.info(
                "Session paused for %s with %ds remaining",
                mac, updated.time_remaining(updated.paused_at),
            )
            return updated.copy()

    def resume(self, mac_address: str) -> AccessSession:
        """Credit the paused time back, re-allow the device and reschedule.

        Raises:
            SessionNotFound: No active session for the device.
            InvalidSessionState: The session is not paused.
            EnforcementFailed: Access could not be confirmed; the session
                stays paused.
        """
        mac = normalize_mac(mac_address)
        with self.lock_for(mac):
            session = self.table.get(mac)
            if session is None or not session.active:
                raise SessionNotFound(mac)
            if not session.paused:
                raise InvalidSessionState(mac, "not paused")

            now = self.clock()
            elapsed = max(now - (session.paused_at or now), timedelta(0))
            updated = session.copy()
            updated.end_time = session.end_time + elapsed
            updated.paused_duration = session.paused_duration + elapsed.total_seconds()
            updated.paused = False
            updated.paused_at = None
            self._persist(
                mac,
                paused=False,
                paused_at=None,
                paused_duration=updated.paused_duration,
                end_time=updated.end_time,
            )
            self.table.put(updated)

            try:
                self.driver.allow(mac, updated.ip_address)
            except DriverError as e:
                logger.error("Resume for %s failed to restore access: %s", mac, e)
                self._rollback(session, "resume")
                raise EnforcementFailed(mac, f"access not restored after resume: {e}")
            self.scheduler.schedule(mac, updated.end_time)
            logger.info(
                "Session resumed for %s: extended by %.0fs, ends %s",
                mac, elapsed.total_seconds(), updated.end_time.isoformat(),
            )
            return updated.copy()

    def end(self, mac_address: str, reason: str = "ended") -> None:
        """End a session wherever it still exists and block the device.

        Idempotent: safe for devices known only to storage, only to memory,
        or to neither.
        """
        mac = normalize_mac(mac_address)
        with self.lock_for(mac):
            self.store.update_session(mac, active=False)
            self.scheduler.cancel(mac)
            session = self.table.pop(mac)
            ip = session.ip_address if session else None
            logger.info("Session %s for %s", reason, mac)
            try:
                self.driver.block(mac, ip)
            except DriverError as e:
                logger.error("Session for %s ended but access not blocked: %s", mac, e)
                raise EnforcementFailed(mac, f"session ended but access not blocked: {e}")

    def update_ip_mapping(self, mac_address: str, ip_address: str) -> Optional[AccessSession]:
        """Record the device's current IP; re-applies rules that match on it."""
        mac = normalize_mac(mac_address)
        ip = normalize_ip(ip_address)
        with self.lock_for(mac):
            session = self.table.get(mac)
            if session is None or ip is None or session.ip_address == ip:
                return session
            self._persist(mac, ip_address=ip)
            session.ip_address = ip
            self.table.put(session)
            self._enforce_committed(session, "ip update")
            return session.copy()

    # -- expiry --------------------------------------------------------------

    def _expire(self, mac: str) -> None:
        with self.lock_for(mac):
            session = self.table.get(mac)
            if session is None or session.paused:
                return
            if not session.is_expired(self.clock()):
                self.scheduler.schedule(mac, session.end_time)
                return
            try:
                self.end(mac, reason="expired")
            except AccessControlError as e:
                logger.error("Expiry of %s did not complete: %s", mac, e)

    def sweep_expired(self) -> List[str]:
        """End every session whose time has run out, in memory and in storage."""
        ended = []
        for session in self.table.snapshot():
            mac = session.mac_address
            with self.lock_for(mac):
                current = self.table.get(mac)
                if current is None or not current.is_expired(self.clock()):
                    continue
                try:
                    self.end(mac, reason="expired")
                except AccessControlError as e:
                    logger.error("Expiry sweep could not end %s: %s", mac, e)
                    continue
                ended.append(mac)

        stale = self.store.expired_session_macs(self.clock(), exclude=self.table.macs())
        for mac in stale:
            with self.lock_for(mac):
                # a start may have raced the candidate query
                if mac in self.table:
                    continue
                if not self.store.cleanup_expired_sessions(self.clock(), macs=[mac]):
                    continue
                try:
                    self.end(mac, reason="expired while unloaded")
                except AccessControlError as e:
                    logger.error("Expiry sweep could not block %s: %s", mac, e)
                    continue
                ended.append(mac)
        if ended:
            logger.info("Cleaned up %d expired sessions", len(ended))
        return ended

    # -- recovery ------------------------------------------------------------

    def restore(self, session: AccessSession) -> bool:
        """Load a persisted session into memory and re-apply its rules.

        Returns False if the device is already in memory. Firewall failures
        are logged and left to the reconciler.
        """
        mac = session.mac_address
        with self.lock_for(mac):
            if mac in self.table:
                return False
            self.table.put(session)
            if not session.paused:
                self.scheduler.schedule(mac, session.end_time)
            try:
                self.apply_firewall(session)
            except DriverError as e:
                logger.warning("Restored %s but could not apply firewall state: %s", mac, e)
            logger.info(
                "Restored session for %s (paused=%s, ends %s)",
                mac, session.paused, session.end_time.isoformat(),
            )
            return True

    def initialize(self) -> RecoveryReport:
        """Recover persisted active sessions after a process start.

        Sessions already past their end are finalized without being allowed.
        Paused sessions stay paused; their pause clock is moved to now so the
        downtime is neither credited nor double-counted on resume.
        """
        report = RecoveryReport()
        sessions = self.store.get_active_sessions()
        logger.info("Found %d potentially active sessions in storage", len(sessions))
        for session in sessions:
            mac = session.mac_address
            try:
                with self.lock_for(mac):
                    now = self.clock()
                    if session.paused and session.paused_at and now > session.paused_at:
                        session.paused_duration += (now - session.paused_at).total_seconds()
                        session.paused_at = now
                        self._persist(
                            mac, paused_at=now, paused_duration=session.paused_duration
                        )
                    if session.is_expired(now):
                        logger.info(
                            "Session for %s expired during downtime (%s)",
                            mac, session.end_time.isoformat(),
                        )
                        report.expired += 1
                        self.end(mac, reason="expired during downtime")
                        continue
                    if self.restore(session):
                        report.restored += 1
            except AccessControlError as e:
                report.failed += 1
                logger.error("Recovery of %s failed: %s", mac, e)
        logger.info(
            "Session recovery complete: %d restored, %d expired, %d failed",
            report.restored, report.expired, report.failed,
        )
        return report

    def shutdown(self) -> None:
        """Stop firing expiries; sessions stay active for the next start."""
        self.scheduler.stop()
        self.scheduler.clear()

    # -- queries -------------------------------------------------------------

    def get_session(self, mac_address: str) -> Optional[AccessSession]:
        return self.table.get(normalize_mac(mac_address))

    def get_session_by_ip(self, ip_address: str) -> Optional[AccessSession]:
        ip = normalize_ip(ip_address)
        return self.table.find_by_ip(ip) if ip else None

    def is_session_active(self, mac_address: str) -> bool:
        session = self.get_session(mac_address)
        return bool(session and session.active)

    def get_time_remaining(self, mac_address: str) -> int:
        session = self.get_session(mac_address)
        return session.time_remaining(self.clock()) if session else 0

    def list_active(self) -> List[AccessSession]:
        return sorted(self.table.snapshot(), key=lambda s: s.mac_address)

    def get_stats(self) -> EngineStats:
        totals = self.store.get_totals()
        sessions = self.table.snapshot()
        return EngineStats(
            total_sessions=totals.total_sessions,
            active_sessions=len(sessions),
            paused_sessions=sum(1 for s in sessions if s.paused),
            total_revenue=totals.total_revenue,
            average_session_minutes=totals.average_session_minutes,
        )
